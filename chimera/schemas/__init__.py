from .orchestrate import (
    ClarificationResponse,
    ErrorResponse,
    OrchestrateRequest,
    OrchestrateResponse,
    PlanResponse,
    ResultResponse,
)

__all__ = [
    "ClarificationResponse",
    "ErrorResponse",
    "OrchestrateRequest",
    "OrchestrateResponse",
    "PlanResponse",
    "ResultResponse",
]
