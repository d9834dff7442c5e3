from __future__ import annotations

"""
Data Models Package.

Re-exports all Pydantic models for short imports:
    from trustudsel.models import SessionState, UserSession, ErrorInfo
    from trustudsel.models import RegistrationStage, ProviderErrorCode
"""

from trustudsel.models.enums import (
    CacheAge,
    CacheNamespace,
    ErrorKind,
    ProviderErrorCode,
    RecoveryStage,
    RegistrationStage,
)
from trustudsel.models.auth_models import ErrorInfo, FlowResult, ValidationResult
from trustudsel.models.session_models import (
    CacheEntry,
    ProfileSubmission,
    RegistrationDraft,
    SessionState,
    UserSession,
    UserStats,
)

__all__ = [
    "CacheAge",
    "CacheEntry",
    "CacheNamespace",
    "ErrorInfo",
    "ErrorKind",
    "FlowResult",
    "ProfileSubmission",
    "ProviderErrorCode",
    "RecoveryStage",
    "RegistrationDraft",
    "RegistrationStage",
    "SessionState",
    "UserSession",
    "UserStats",
    "ValidationResult",
]
