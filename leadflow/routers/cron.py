# leadflow/routers/cron.py
from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from leadflow.db import get_session
from leadflow.deps import require_cron_secret
from leadflow.services import outreach

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.api_route("/sms/process-scheduled", methods=["GET", "POST"])
def cron_sms_process_scheduled(session: Session = Depends(get_session)):
    return outreach.run_due_outreach(session, "sms").to_dict()


@router.api_route("/voice/process-scheduled", methods=["GET", "POST"])
def cron_voice_process_scheduled(session: Session = Depends(get_session)):
    return outreach.run_due_outreach(session, "voice").to_dict()


@router.post("/sms/close-stale")
def cron_sms_close_stale(
    idle_hours: int | None = Query(None, ge=1, le=24 * 30),
    session: Session = Depends(get_session),
):
    return outreach.close_stale_conversations(session, idle_hours=idle_hours)
