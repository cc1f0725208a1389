from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from orderflow.api.deps import admin_or_internal, get_db, get_processor
from orderflow.db.session import unit_of_work
from orderflow.outbox.store import get_outbox

router = APIRouter()


@router.get("/v1/outbox/metrics")
def metrics(db: Session = Depends(get_db), _=Depends(admin_or_internal)):
    return get_outbox().metrics(db).as_dict()


@router.get("/v1/outbox/health")
def health(response: Response, db: Session = Depends(get_db)):
    verdict = get_outbox().health(db)
    if verdict.status == "unhealthy":
        response.status_code = 503
    return verdict.as_dict()


@router.post("/v1/outbox/process")
def process(processor=Depends(get_processor), _=Depends(admin_or_internal)):
    stats = processor.run_once()
    if stats is None:
        return {"status": "skipped", "reason": "a processing pass is already running"}
    return {"status": "ok", **stats}


@router.post("/v1/outbox/dlq/{dlq_id}/reprocess")
def reprocess(dlq_id: int, db: Session = Depends(get_db), _=Depends(admin_or_internal)):
    with unit_of_work(db):
        ev = get_outbox().replay_dlq(db, dlq_id)
    return {"status": "requeued", "event_id": ev.id, "event_type": ev.event_type}
