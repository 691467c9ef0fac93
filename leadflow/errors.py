# leadflow/errors.py


class LeadflowError(Exception):
    """Base for engine errors."""


class ConfigurationError(LeadflowError):
    """A credential or secret the operation needs is not configured."""


class ProviderError(LeadflowError):
    """An external provider (SMS, voice, geocoding) failed or refused the request."""


class SmsProviderError(ProviderError):
    pass


class VoiceProviderError(ProviderError):
    pass


class ProviderTimeout(ProviderError):
    pass


class AiOutputError(LeadflowError):
    """The AI capability failed or returned output we could not use."""


class ConversationConflict(LeadflowError):
    """Another writer changed the conversation between our read and our write."""


class NotFoundError(LeadflowError):
    pass


class UnrecordedDelivery(LeadflowError):
    """The provider accepted the message but saving it failed. Retrying would send it twice."""

    retryable = False
