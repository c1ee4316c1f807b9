"""FastAPI dependencies wiring services to the request's session."""
from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from flaglab.config import get_settings
from flaglab.database import get_db
from flaglab.services.evaluation_cache import EvaluationCache
from flaglab.services.experiments import ExperimentManager, experiment_variant_assigner
from flaglab.services.feature_flags import FeatureFlagService
from flaglab.services.stores import DefinitionStore
from flaglab.services.winner import FlagWinnerApplier

settings = get_settings()

# Tenant ids form cache key prefixes, so the key separator is excluded.
TENANT_ID_PATTERN = r"^[A-Za-z0-9_.\-]+$"


def get_tenant_id(
    x_tenant_id: str = Header(..., min_length=1, max_length=100, pattern=TENANT_ID_PATTERN)
) -> str:
    """Tenant resolved upstream and forwarded in the X-Tenant-ID header."""
    return x_tenant_id


def get_evaluation_cache(request: Request) -> EvaluationCache:
    """The process-wide cache built at startup."""
    return request.app.state.evaluation_cache


def get_experiment_manager(
    db: Session = Depends(get_db),
    cache: EvaluationCache = Depends(get_evaluation_cache)
) -> ExperimentManager:
    return ExperimentManager(
        db,
        winner_applier=FlagWinnerApplier(DefinitionStore(db), cache)
    )


def get_flag_service(
    db: Session = Depends(get_db),
    cache: EvaluationCache = Depends(get_evaluation_cache),
    manager: ExperimentManager = Depends(get_experiment_manager)
) -> FeatureFlagService:
    return FeatureFlagService(
        db,
        cache,
        assign_experiment_variant=experiment_variant_assigner(manager),
        record_ttl_hours=settings.evaluation_record_ttl_hours
    )
