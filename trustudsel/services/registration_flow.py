"""
Registration Flow Controller.

Drives the multi-stage sign-up state machine::

    collecting-info -> awaiting-verification -> awaiting-password
                    -> completing-profile -> done

The account is first created with a random one-time credential; once the
email code is confirmed the user's chosen password replaces it.  The
provider only changes the password of an authenticated session, so
``set_password`` signs in with the temporary credential first.

Every step returns a ``FlowResult``.  A failed step leaves the stage
unchanged.  Results of calls that complete after ``teardown()`` are
returned with ``discarded=True`` and change nothing.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from trustudsel.errors import (
    AuthError,
    SideEffectError,
    ValidationError,
    as_auth_error,
)
from trustudsel.identity.provider import IdentityProvider
from trustudsel.logger import StructuredLogger
from trustudsel.models.auth_models import FlowResult
from trustudsel.models.enums import ProviderErrorCode, RegistrationStage
from trustudsel.models.session_models import ProfileSubmission, RegistrationDraft
from trustudsel.services.base_service import BaseService
from trustudsel.services.photo_upload import PhotoUploader
from trustudsel.services.session_store import SessionStore
from trustudsel.services.validation import (
    generate_temporary_credential,
    normalize_email,
    normalize_phone,
    require,
    validate_code,
    validate_email,
    validate_name,
    validate_password_pair,
    validate_phone,
    validate_required,
    validate_zipcode,
)
from trustudsel.utils.timers import Cooldown, TimerGroup

StatusCallback = Callable[[str], None]

# Staged progress messages shown while a step is running.
STATUS_VERIFYING: str = "Verifying your code..."
STATUS_VERIFIED: str = "Code verified successfully!"
STATUS_CREATING_PASSWORD: str = "Creating your password..."
STATUS_PASSWORD_SET: str = "Password set successfully!"
STATUS_PREPARING: str = "Preparing your account..."


class RegistrationFlowController(BaseService):
    """State machine for new-account registration.

    Parameters
    ----------
    store:
        The session store; all account operations go through it.
    provider:
        Identity provider, used directly only for the temporary-credential
        sign-in and password change.
    photo_uploader:
        Optional profile photo uploader.
    logger:
        Structured JSON logger.
    cooldown_s:
        Client-side resend cooldown.
    on_status:
        Receives staged progress messages.
    on_tick:
        Receives the remaining cooldown seconds once per second.
    status_delay_s:
        Delay before the follow-up status message of a staged sequence.
    clock:
        Monotonic seconds for the cooldown; injectable for tests.
    """

    def __init__(
        self,
        store: SessionStore,
        provider: IdentityProvider,
        photo_uploader: Optional[PhotoUploader],
        logger: StructuredLogger,
        cooldown_s: float = 30.0,
        on_status: Optional[StatusCallback] = None,
        on_tick: Optional[Callable[[int], None]] = None,
        status_delay_s: float = 0.8,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(logger)
        self._store: SessionStore = store
        self._provider: IdentityProvider = provider
        self._uploader: Optional[PhotoUploader] = photo_uploader
        self._on_status: Optional[StatusCallback] = on_status
        self._status_delay_s: float = status_delay_s
        self._timers: TimerGroup = TimerGroup()
        self._cooldown: Cooldown = Cooldown(cooldown_s, self._timers, on_tick, clock)
        self._stage: RegistrationStage = RegistrationStage.COLLECTING_INFO
        self._draft: Optional[RegistrationDraft] = None
        self._account_exists: bool = False
        self._epoch: int = 0
        self._torn_down: bool = False

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def stage(self) -> RegistrationStage:
        return self._stage

    @property
    def draft(self) -> Optional[RegistrationDraft]:
        return self._draft

    @property
    def timers(self) -> TimerGroup:
        return self._timers

    def resend_cooldown_remaining(self) -> int:
        """Seconds until ``resend_code`` is allowed again."""
        return self._cooldown.remaining()

    # ------------------------------------------------------------------
    # Stage 1: collecting-info
    # ------------------------------------------------------------------

    async def submit_info(self, email: str, name: str, phone: str) -> FlowResult:
        """Validate the basic details and create the account."""
        blocked = self._expect(RegistrationStage.COLLECTING_INFO)
        if blocked is not None:
            return blocked

        epoch = self._epoch
        draft: Optional[RegistrationDraft] = None
        try:
            require(validate_email(email, require_edu=True))
            require(validate_name(name))
            require(validate_phone(phone))
            draft = RegistrationDraft(
                email=normalize_email(email),
                name=name.strip(),
                phone_number=normalize_phone(phone),
                temporary_credential=generate_temporary_credential(),
            )
            await self._store.sign_up(
                draft.email,
                draft.temporary_credential or "",
                {"name": draft.name, "phone_number": draft.phone_number},
            )
        except AuthError as exc:
            if self._superseded(epoch):
                return self._discarded()
            if exc.code is ProviderErrorCode.ACCOUNT_EXISTS and draft is not None:
                self._draft = draft.model_copy(update={"temporary_credential": None})
                self._account_exists = True
                return self._fail(exc, can_resend=True)
            return self._fail(exc)

        if self._superseded(epoch):
            return self._discarded()
        self._draft = draft
        self._account_exists = False
        self._advance(RegistrationStage.AWAITING_VERIFICATION)
        self._cooldown.start()
        return self._ok(message=f"We sent a verification code to {draft.email}.")

    async def resend_for_existing_account(self) -> FlowResult:
        """Resend the code for an existing, unconfirmed account."""
        blocked = self._expect(RegistrationStage.COLLECTING_INFO)
        if blocked is not None:
            return blocked
        if not self._account_exists or self._draft is None:
            return self._fail(ValidationError("There is no existing account to verify."))

        epoch = self._epoch
        try:
            await self._store.resend_verification(self._draft.email)
        except AuthError as exc:
            if self._superseded(epoch):
                return self._discarded()
            return self._fail(exc, can_resend=True)

        if self._superseded(epoch):
            return self._discarded()
        self._advance(RegistrationStage.AWAITING_VERIFICATION)
        self._cooldown.start()
        return self._ok(message=f"We sent a new verification code to {self._draft.email}.")

    # ------------------------------------------------------------------
    # Stage 2: awaiting-verification
    # ------------------------------------------------------------------

    async def confirm_code(self, code: str) -> FlowResult:
        blocked = self._expect(RegistrationStage.AWAITING_VERIFICATION)
        if blocked is not None:
            return blocked
        assert self._draft is not None

        epoch = self._epoch
        try:
            require(validate_code(code))
            self._status(STATUS_VERIFYING)
            await self._store.confirm_registration(self._draft.email, code.strip())
        except AuthError as exc:
            if self._superseded(epoch):
                return self._discarded()
            return self._fail(exc)

        if self._superseded(epoch):
            return self._discarded()
        self._draft = self._draft.model_copy(update={"verification_code": code.strip()})
        self._cooldown.cancel()
        self._advance(RegistrationStage.AWAITING_PASSWORD)
        self._status(STATUS_VERIFIED)
        return self._ok()

    async def resend_code(self) -> FlowResult:
        """Resend the verification code, gated by the client-side cooldown."""
        blocked = self._expect(RegistrationStage.AWAITING_VERIFICATION)
        if blocked is not None:
            return blocked
        assert self._draft is not None

        remaining = self._cooldown.remaining()
        if remaining > 0:
            return self._fail(ValidationError(
                f"Please wait {remaining} seconds before requesting a new code.",
            ))

        epoch = self._epoch
        try:
            await self._store.resend_verification(self._draft.email)
        except AuthError as exc:
            if self._superseded(epoch):
                return self._discarded()
            return self._fail(exc)

        if self._superseded(epoch):
            return self._discarded()
        self._cooldown.start()
        return self._ok(message="A new verification code has been sent.")

    # ------------------------------------------------------------------
    # Stage 3: awaiting-password
    # ------------------------------------------------------------------

    async def set_password(self, password: str, confirm_password: str) -> FlowResult:
        """Replace the temporary credential with the user's password.

        When the account already existed there is no temporary credential
        to exchange.  The email is now verified, so the flow finishes and
        asks the user to sign in with their existing password.
        """
        blocked = self._expect(RegistrationStage.AWAITING_PASSWORD)
        if blocked is not None:
            return blocked
        assert self._draft is not None

        try:
            require(validate_password_pair(password, confirm_password))
        except ValidationError as exc:
            return self._fail(exc)

        temporary = self._draft.temporary_credential
        if temporary is None and not self._draft.password_set:
            self._finish()
            return self._ok(
                requires_sign_in=True,
                message="Your email is verified. Please sign in with your existing password.",
            )

        epoch = self._epoch
        email = self._draft.email
        self._status(STATUS_CREATING_PASSWORD)
        try:
            # A retry after a failed refresh only repeats the refresh.
            if not self._draft.password_set:
                assert temporary is not None
                try:
                    session = await self._provider.sign_in(email, temporary)
                    await self._provider.change_password(session, temporary, password)
                except Exception as exc:
                    raise as_auth_error(exc) from exc
                if self._superseded(epoch):
                    return self._discarded()
                self._draft = self._draft.model_copy(
                    update={"temporary_credential": None, "password_set": True},
                )
            await self._store.refresh_session()
        except AuthError as exc:
            if self._superseded(epoch):
                return self._discarded()
            return self._fail(exc)

        if self._superseded(epoch):
            return self._discarded()
        self._advance(RegistrationStage.COMPLETING_PROFILE)
        self._status(STATUS_PASSWORD_SET)
        self._status_later(STATUS_PREPARING)
        self._log_event(
            "PASSWORD_SET", "Permanent password set for %s.", email, username=email,
        )
        return self._ok()

    # ------------------------------------------------------------------
    # Stage 4: completing-profile
    # ------------------------------------------------------------------

    async def complete_profile(self, submission: ProfileSubmission) -> FlowResult:
        """Upload the optional photo and save the profile attributes."""
        blocked = self._expect(RegistrationStage.COMPLETING_PROFILE)
        if blocked is not None:
            return blocked

        try:
            require(validate_required(submission.university, "University"))
            require(validate_required(submission.city, "City"))
            require(validate_zipcode(submission.zipcode))
        except ValidationError as exc:
            return self._fail(exc)

        epoch = self._epoch
        photo_ref: Optional[str] = None
        if submission.photo_path and self._uploader is not None:
            photo_ref = await self._upload_photo(submission.photo_path)
            if self._superseded(epoch):
                return self._discarded()

        try:
            await self._store.update_remote_attributes(submission.to_attributes(photo_ref))
        except AuthError as exc:
            if self._superseded(epoch):
                return self._discarded()
            return self._fail(exc)

        if self._superseded(epoch):
            return self._discarded()
        self._finish()
        self._log_event("REGISTRATION_COMPLETE", "Registration complete.")
        return self._ok(message="Your profile is complete.")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def teardown(self) -> None:
        """Cancel timers and drop the draft.  Later results are discarded."""
        self._epoch += 1
        self._torn_down = True
        self._cooldown.cancel()
        self._timers.cancel_all()
        self._draft = None
        self._account_exists = False

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _upload_photo(self, path: str) -> Optional[str]:
        assert self._uploader is not None
        user = self._store.state.user
        user_id = user.username if user is not None else (
            self._draft.email if self._draft is not None else "anonymous"
        )
        try:
            return await self._uploader.upload(user_id, path)
        except SideEffectError as exc:
            self._log_event(
                "PHOTO_UPLOAD_FAILED", "Continuing without profile photo: %s", exc.message,
                level=logging.WARNING,
            )
            return None

    def _expect(self, *stages: RegistrationStage) -> Optional[FlowResult]:
        if self._torn_down:
            return self._discarded()
        if self._stage not in stages:
            return self._fail(ValidationError(
                f"This step is not available in stage '{self._stage.value}'.",
            ))
        return None

    def _superseded(self, epoch: int) -> bool:
        return epoch != self._epoch

    def _advance(self, stage: RegistrationStage) -> None:
        self._logger.debug("Registration stage %s -> %s.", self._stage.value, stage.value)
        self._stage = stage

    def _finish(self) -> None:
        self._advance(RegistrationStage.DONE)
        self._cooldown.cancel()
        self._draft = None
        self._account_exists = False

    def _status(self, message: str) -> None:
        if self._on_status is not None:
            self._on_status(message)

    def _status_later(self, message: str) -> None:
        if self._on_status is None:
            return
        epoch = self._epoch

        def emit() -> None:
            if not self._superseded(epoch):
                self._status(message)

        self._timers.call_later(self._status_delay_s, emit)

    def _ok(self, **fields: object) -> FlowResult:
        return FlowResult(success=True, stage=self._stage.value, **fields)

    def _fail(self, error: AuthError, **fields: object) -> FlowResult:
        return FlowResult(success=False, stage=self._stage.value, error=error.info, **fields)

    def _discarded(self) -> FlowResult:
        return FlowResult(success=False, stage=self._stage.value, discarded=True)
