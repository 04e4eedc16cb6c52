"""
HTTP surface for feature quotas.

GET  /usage/{feature_id}          remaining-quota indicator (read-only, may be stale)
POST /usage/{feature_id}/consume  spend one unit; 402 when the quota is exhausted,
                                  503 (retryable) when the store cannot confirm the use
GET  /usage/{feature_id}/record   durable counter (diagnostic/admin)

The user id comes from request.state.user_id, set by the upstream auth
layer. It is never read from the body or query string.

Routes performing a gated action should declare
`Depends(require_quota("essay_assistance"))` so the quota is spent before
the action runs.
"""

import logging
from typing import Callable, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from pydantic import BaseModel

from .catalog import FeatureCatalog
from .errors import ConfigurationError, StoreError
from .service import EntitlementEvaluator, get_default_evaluator
from .settings import load_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["usage"])


class EntitlementResponse(BaseModel):
    """Remaining quota for one feature. Unlimited values are reported as "unlimited"."""
    feature_id: str
    allowed: bool
    remaining: Union[int, str]
    limit: Union[int, str]
    reset_at: Optional[str]
    tier: str
    stale: bool
    usage_percentage: int = 0
    upgrade_message: str = ""


class ConsumeResponse(BaseModel):
    feature_id: str
    accepted: bool
    decision: dict


class UsageRecordResponse(BaseModel):
    """Durable usage counter."""
    user_id: str
    feature_id: str
    count: int
    window_start: str
    reset_period: str


def get_evaluator() -> EntitlementEvaluator:
    return get_default_evaluator()


def _user_id(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if user_id and str(user_id).strip():
        return str(user_id).strip()
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "AUTHENTICATION_REQUIRED", "message": "Sign in to use this feature"},
    )


def _known_feature(evaluator: EntitlementEvaluator, feature_id: str) -> str:
    if feature_id not in evaluator.catalog:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "UNKNOWN_FEATURE", "message": f"Feature '{feature_id}' not found"},
        )
    return evaluator.catalog.policy_for(feature_id).feature_id


def _quota_exceeded(evaluator: EntitlementEvaluator, user_id: str, feature_id: str) -> HTTPException:
    decision = evaluator.evaluate(user_id, feature_id)
    policy = evaluator.catalog.policy_for(feature_id)
    return HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail={
            "error": "QUOTA_EXCEEDED",
            "message": policy.upgrade_message or "Upgrade to continue using this feature",
            "feature_id": feature_id,
            "decision": decision.to_dict(),
        },
    )


def _store_unavailable(exc: StoreError, feature_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "error": "USAGE_STORE_UNAVAILABLE",
            "message": "Usage could not be recorded right now. Please try again.",
            "feature_id": feature_id,
            "cause": exc.error_code,
            "retryable": True,
        },
        headers={"Retry-After": "2"},
    )


def _spend_or_raise(evaluator: EntitlementEvaluator, request: Request, user_id: str, feature_id: str) -> None:
    """Spend one unit or raise: 503 when the store could not confirm, 402 when exhausted."""
    try:
        outcome = evaluator.try_consume(user_id, feature_id)
    except ConfigurationError as exc:
        logger.error(
            "Gated feature missing from the evaluator catalog",
            extra={"user_id": user_id, "feature_id": feature_id, "path": request.url.path},
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.to_dict()
        ) from exc

    if outcome.accepted:
        return
    if outcome.store_failed:
        logger.warning(
            "Usage not confirmed - store unavailable",
            extra={
                "user_id": user_id,
                "feature_id": feature_id,
                "path": request.url.path,
                "error_code": outcome.error.error_code,
            },
        )
        raise _store_unavailable(outcome.error, feature_id)

    logger.warning(
        "Gated request denied - quota exhausted",
        extra={"user_id": user_id, "feature_id": feature_id, "path": request.url.path},
    )
    raise _quota_exceeded(evaluator, user_id, feature_id)


@router.get("/{feature_id}", response_model=EntitlementResponse)
def get_feature_entitlement(
    feature_id: str,
    request: Request,
    evaluator: EntitlementEvaluator = Depends(get_evaluator),
):
    """Remaining quota for display. Backend enforcement happens in consume."""
    user_id = _user_id(request)
    feature_id = _known_feature(evaluator, feature_id)
    decision = evaluator.evaluate(user_id, feature_id)
    return EntitlementResponse(feature_id=feature_id, **decision.to_dict())


@router.post("/{feature_id}/consume", response_model=ConsumeResponse)
def consume_feature(
    feature_id: str,
    request: Request,
    evaluator: EntitlementEvaluator = Depends(get_evaluator),
):
    user_id = _user_id(request)
    feature_id = _known_feature(evaluator, feature_id)

    _spend_or_raise(evaluator, request, user_id, feature_id)

    decision = evaluator.evaluate(user_id, feature_id)
    return ConsumeResponse(feature_id=feature_id, accepted=True, decision=decision.to_dict())


@router.get("/{feature_id}/record", response_model=UsageRecordResponse)
def get_feature_usage_record(
    feature_id: str,
    request: Request,
    evaluator: EntitlementEvaluator = Depends(get_evaluator),
):
    user_id = _user_id(request)
    feature_id = _known_feature(evaluator, feature_id)

    try:
        record = evaluator.get_usage(user_id, feature_id)
    except StoreError as exc:
        logger.warning(
            "Usage record lookup failed",
            extra={"user_id": user_id, "feature_id": feature_id, "error_code": exc.error_code},
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": exc.error_code, "message": "Usage data temporarily unavailable"},
        ) from exc

    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "NOT_FOUND", "message": f"No usage recorded for '{feature_id}'"},
        )
    return UsageRecordResponse(**record.to_dict())


def require_quota(feature_id: str, *, catalog: Optional[FeatureCatalog] = None) -> Callable:
    """
    Dependency factory that spends one unit of `feature_id` before the route runs.

    The feature id is checked against the catalog when the dependency is
    built, so a typo fails at startup rather than per request. Without an
    explicit catalog this is the one FEATURE_CATALOG_PATH points at (or the
    bundled features.json); pass the evaluator's catalog when it was built
    from somewhere else.

    Usage:
        @router.post("/essays/review")
        def review_essay(_quota=Depends(require_quota("essay_assistance"))):
            ...
    """
    if catalog is None:
        catalog = FeatureCatalog(load_settings().catalog_path)
    catalog.require([feature_id])

    def _check(request: Request, evaluator: EntitlementEvaluator = Depends(get_evaluator)) -> bool:
        _spend_or_raise(evaluator, request, _user_id(request), feature_id)
        return True

    return _check


def create_app(evaluator: Optional[EntitlementEvaluator] = None) -> FastAPI:
    app = FastAPI(title="Feature quota service")
    if evaluator is not None:
        app.dependency_overrides[get_evaluator] = lambda: evaluator
    app.include_router(router)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    return app
