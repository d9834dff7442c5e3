"""
Password Recovery Flow Controller.

Two user-facing stages, ``request-code`` and ``submit-new-password``,
ending in ``done``.  Local validation always runs before the remote
call; provider error messages are returned verbatim because the provider
is authoritative on password policy and account existence.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from trustudsel.errors import AuthError, ValidationError
from trustudsel.logger import StructuredLogger
from trustudsel.models.auth_models import FlowResult
from trustudsel.models.enums import RecoveryStage
from trustudsel.services.base_service import BaseService
from trustudsel.services.session_store import SessionStore
from trustudsel.services.validation import (
    normalize_email,
    require,
    validate_code,
    validate_email,
    validate_password_pair,
)


class RecoveryForm(BaseModel):
    """Field values held across the recovery stages."""

    email: str = ""
    code: str = Field(default="", repr=False)
    new_password: str = Field(default="", repr=False)
    confirm_password: str = Field(default="", repr=False)


class PasswordRecoveryFlowController(BaseService):
    """State machine for the forgot-password flow."""

    def __init__(self, store: SessionStore, logger: StructuredLogger) -> None:
        super().__init__(logger)
        self._store: SessionStore = store
        self._stage: RecoveryStage = RecoveryStage.REQUEST_CODE
        self._form: RecoveryForm = RecoveryForm()
        self._epoch: int = 0

    @property
    def stage(self) -> RecoveryStage:
        return self._stage

    @property
    def form(self) -> RecoveryForm:
        return self._form

    async def request_code(self, email: str) -> FlowResult:
        """Send a reset code to *email* and move to ``submit-new-password``."""
        if self._stage is not RecoveryStage.REQUEST_CODE:
            return self._fail(ValidationError("A reset code has already been requested."))

        epoch = self._epoch
        try:
            require(validate_email(email))
            await self._store.request_password_reset(email)
        except AuthError as exc:
            if epoch != self._epoch:
                return self._discarded()
            return self._fail(exc)

        if epoch != self._epoch:
            return self._discarded()
        self._form = RecoveryForm(email=normalize_email(email))
        self._stage = RecoveryStage.SUBMIT_NEW_PASSWORD
        return self._ok(message=f"A reset code was sent to {self._form.email}.")

    async def submit_new_password(
        self, code: str, new_password: str, confirm_password: str,
    ) -> FlowResult:
        if self._stage is not RecoveryStage.SUBMIT_NEW_PASSWORD:
            return self._fail(ValidationError("Request a reset code first."))

        self._form = self._form.model_copy(update={
            "code": code,
            "new_password": new_password,
            "confirm_password": confirm_password,
        })
        epoch = self._epoch
        try:
            require(validate_code(code))
            require(validate_password_pair(new_password, confirm_password))
            await self._store.submit_new_password(self._form.email, code, new_password)
        except AuthError as exc:
            if epoch != self._epoch:
                return self._discarded()
            return self._fail(exc)

        if epoch != self._epoch:
            return self._discarded()
        self._form = RecoveryForm(email=self._form.email)
        self._stage = RecoveryStage.DONE
        return self._ok(message="Your password has been reset. Please sign in.")

    def back(self) -> RecoveryStage:
        """Return to ``request-code``, clearing the code and password fields."""
        if self._stage is RecoveryStage.SUBMIT_NEW_PASSWORD:
            self._epoch += 1
            self._form = RecoveryForm(email=self._form.email)
            self._stage = RecoveryStage.REQUEST_CODE
        return self._stage

    def teardown(self) -> None:
        self._epoch += 1
        self._form = RecoveryForm()

    def _ok(self, message: Optional[str] = None) -> FlowResult:
        return FlowResult(success=True, stage=self._stage.value, message=message)

    def _fail(self, error: AuthError) -> FlowResult:
        return FlowResult(success=False, stage=self._stage.value, error=error.info)

    def _discarded(self) -> FlowResult:
        return FlowResult(success=False, stage=self._stage.value, discarded=True)
