from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import sessionmaker

from exportflow.config import settings
from exportflow.database import SessionLocal
from exportflow.services.factory import build_orchestrator
from exportflow.services.ledger import TrackingLedger
from exportflow.services.orchestrator import PipelineOrchestrator


def get_session_factory() -> sessionmaker:
    return SessionLocal


@lru_cache(maxsize=1)
def _default_orchestrator() -> PipelineOrchestrator:
    # AWS clients are created once per process.
    return build_orchestrator(settings, SessionLocal)


def get_orchestrator() -> PipelineOrchestrator:
    return _default_orchestrator()


def get_ledger(
    session_factory: sessionmaker = Depends(get_session_factory),  # noqa: B008
) -> TrackingLedger:
    return TrackingLedger(session_factory, lease_seconds=settings.lease_seconds)
