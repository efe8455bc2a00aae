"""
Registration domain service - Draft-to-verified identity state machine.

This module contains the core business logic for identity registration.
An identity starts as a draft and is promoted to a verified account only
after every gate has passed.

Identity State Machine
======================

    draft:step1                  draft persisted, document read, OTP issued
      -> draft:step2             OTP confirmed
      -> draft:step3             all gates satisfied (ready for promotion)
      -> verified                promoted (terminal)

Gates (checked independently, in any order):
- OTP gate: the user confirmed the code sent by email
- Face gate: face enrollment reached COMPLETED
- ID gate: the ID-verification record is APPROVED

A FAILED face enrollment blocks promotion until reenroll_face() succeeds.
A document routed to manual review blocks promotion until
resolve_manual_review() approves it.

Slow remote work (face enrollment, OTP delivery) runs on the task queue.
OCR runs synchronously, bounded by the gateway timeout; a flaky OCR call
routes the document to manual review instead of failing the registration.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID, uuid4

import bcrypt

from .exceptions import (
    ExternalServiceConflict,
    ExternalServiceTransient,
    IdentityNotFound,
    InvalidCredentials,
    InvalidOtp,
    LoginAlreadyClaimed,
    PreconditionFailed,
)
from .models import (
    Credentials,
    DocumentImage,
    ExtractedFields,
    ExtractionStatus,
    FaceEnrollmentStatus,
    Identity,
    IdentityStatistics,
    IdVerification,
    IdVerificationStatus,
    OtpConfirmation,
    OtpRecord,
    RegistrationStatus,
    RegistrationStep,
    Role,
)
from .ports import (
    EmailSender,
    IdentityRepository,
    OtpRepository,
    PromotionResult,
    TaskQueue,
    VerificationGateway,
)
from .tasks import BackgroundTaskRunner, TaskKind

logger = logging.getLogger(__name__)

# Compared against when a login is unknown so authenticate() always runs bcrypt.
_DUMMY_BCRYPT_HASH = bcrypt.hashpw(b"dummy_password_for_timing_safety", bcrypt.gensalt(10)).decode()

GATE_OTP = "otp"
GATE_FACE = "face_enrollment"
GATE_ID = "id_verification"


@dataclass
class RegistrationService:
    """
    Domain service for identity registration.

    Orchestrates the registration flow: credential hashing, document
    extraction, OTP issue and confirmation, background face enrollment,
    and promotion.
    """

    repository: IdentityRepository
    otp_repository: OtpRepository
    email_sender: EmailSender
    gateway: VerificationGateway
    tasks: TaskQueue
    bcrypt_cost: int = 10
    otp_length: int = 6
    draft_retention_hours: int = 24

    def begin_registration(
        self, credentials: Credentials, role: Role, document: DocumentImage
    ) -> Identity:
        """
        Create a draft identity and start its verification.

        Args:
            credentials: Login identifier, password, display name and email
            role: Requested account role
            document: ID-document image

        Returns:
            The draft identity (not usable for login yet)

        Raises:
            LoginAlreadyClaimed: If a verified identity already uses the login
            ValueError: If no email address is available for OTP delivery
        """
        login = self._normalize_login(credentials.login)
        email = self._normalize_login(credentials.email or credentials.login)
        if "@" not in email:
            raise ValueError("An email address is required to deliver the OTP")

        if self.repository.find_live_by_login(login) is not None:
            raise LoginAlreadyClaimed(login)

        identity_id = uuid4()
        identity = Identity(
            id=identity_id,
            login=login,
            email=email,
            full_name=credentials.full_name.strip(),
            password_hash=self._hash_password(credentials.password),
            role=role,
            registration_started=self._now(),
            id_verification_id=uuid4(),
        )
        verification = IdVerification(
            id=identity.id_verification_id,
            identity_id=identity_id,
            image_ref=self._image_ref(document),
        )
        self.repository.create_draft(identity, verification)
        logger.info(f"Draft identity {identity_id} created for {login}")

        self._read_document(identity_id, document)
        self._issue_otp(identity)
        self._enqueue_face_enrollment(identity, document)
        return identity

    def confirm_otp(self, identity_id: UUID, code: str) -> OtpConfirmation:
        """
        Confirm a one-time passcode. Single use: the record is deleted.

        Satisfies the OTP gate only; promotion is a separate step. A
        verified identity accepts no code.

        Raises:
            InvalidOtp: If no OTP matches (identity_id, code) or the identity
                is no longer a draft
        """
        identity = self.repository.get(identity_id)
        if identity is None or not identity.is_draft:
            raise InvalidOtp(str(identity_id))
        if not self.otp_repository.consume(identity_id, code.strip()):
            raise InvalidOtp(str(identity_id))

        if not self.repository.update_fields(
            identity_id, otp_verified=True, registration_step=RegistrationStep.STEP2
        ):
            raise InvalidOtp(str(identity_id))
        ready = self.repository.mark_ready_if_gates_satisfied(identity_id)
        logger.info(f"OTP confirmed for identity {identity_id} (ready={ready})")
        return OtpConfirmation(identity_id=identity_id, ready_for_promotion=ready)

    def complete_verification(self, identity_id: UUID) -> Identity:
        """
        Promote a draft identity to a verified account.

        Calling this on an already verified identity is a successful no-op.

        Raises:
            IdentityNotFound: If the identity does not exist
            PreconditionFailed: If a gate is not satisfied
            LoginAlreadyClaimed: If another identity was promoted with the same login
        """
        result = self.repository.promote(identity_id)

        if result == PromotionResult.NOT_FOUND:
            raise IdentityNotFound(str(identity_id))
        if result == PromotionResult.LOGIN_TAKEN:
            identity = self._require(identity_id)
            raise LoginAlreadyClaimed(identity.login)
        if result == PromotionResult.GATES_UNSATISFIED:
            gates = self._unsatisfied_gates(identity_id)
            raise PreconditionFailed(
                f"Verification gates not satisfied: {', '.join(gates)}", gates=gates
            )

        if result == PromotionResult.PROMOTED:
            logger.info(f"Identity {identity_id} promoted to verified")
        return self._require(identity_id)

    def get_registration_status(self, identity_id: UUID) -> RegistrationStatus:
        """
        Read-only projection of registration progress.

        Raises:
            IdentityNotFound: If the identity does not exist
        """
        identity = self._require(identity_id)
        verification = self.repository.get_verification(identity_id)
        otps = self.otp_repository.list_for_identity(identity_id)

        return RegistrationStatus(
            identity_id=identity_id,
            face_enrollment_status=identity.face_enrollment_status,
            is_verified=identity.is_verified,
            otp_email_sent=identity.otp_verified or any(otp.email_sent for otp in otps),
            registration_step=identity.registration_step,
            id_verification_status=verification.status if verification else None,
            face_enrollment_error=identity.face_enrollment_error,
        )

    def resend_otp(self, identity_id: UUID) -> None:
        """
        Issue a fresh OTP after the previous delivery was exhausted.

        Raises:
            IdentityNotFound: If the identity does not exist
            PreconditionFailed: If the OTP gate is already satisfied or an
                earlier code is still pending delivery
        """
        identity = self._require(identity_id)
        if identity.otp_verified or identity.is_verified:
            raise PreconditionFailed("OTP already confirmed", gates=())

        otps = self.otp_repository.list_for_identity(identity_id)
        if any(not otp.delivery_failed for otp in otps):
            raise PreconditionFailed("A previous code is still deliverable", gates=(GATE_OTP,))

        self._issue_otp(identity)

    def reenroll_face(self, identity_id: UUID, document: DocumentImage) -> None:
        """
        Retry face enrollment after it failed.

        Raises:
            IdentityNotFound: If the identity does not exist
            PreconditionFailed: If face enrollment has not failed
        """
        identity = self._require(identity_id)
        if identity.face_enrollment_status != FaceEnrollmentStatus.FAILED:
            raise PreconditionFailed(
                f"Face enrollment is {identity.face_enrollment_status.value}, not failed",
                gates=(GATE_FACE,),
            )

        self.repository.update_fields(
            identity_id,
            face_enrollment_status=FaceEnrollmentStatus.PENDING,
            face_enrollment_error=None,
        )
        self._enqueue_face_enrollment(identity, document, force=True)

    def resolve_manual_review(
        self,
        identity_id: UUID,
        approved: bool,
        note: str | None = None,
        fields: ExtractedFields | None = None,
    ) -> IdVerification:
        """
        Record a reviewer decision on the identity's ID document.

        Raises:
            IdentityNotFound: If the identity does not exist
            PreconditionFailed: If the document is already approved
        """
        identity = self._require(identity_id)
        verification = self.repository.get_verification(identity_id)
        if verification is None:
            raise IdentityNotFound(str(identity_id))
        if identity.is_verified or verification.status == IdVerificationStatus.APPROVED:
            raise PreconditionFailed("ID document already approved", gates=())

        updates: dict[str, Any] = {
            "status": IdVerificationStatus.APPROVED if approved else IdVerificationStatus.REJECTED,
            "review_note": note,
        }
        if fields is not None:
            updates.update(
                full_name=fields.full_name,
                birth_date=fields.birth_date,
                document_number=fields.document_number,
            )
        self.repository.update_verification(identity_id, **updates)
        logger.info(f"Manual review for identity {identity_id}: {updates['status'].value}")

        if approved:
            self.repository.mark_ready_if_gates_satisfied(identity_id)
        return self.repository.get_verification(identity_id)

    def authenticate(self, login: str, password: str) -> Identity:
        """
        Check credentials of a verified account.

        bcrypt runs even for unknown logins so response time does not
        reveal whether an account exists.

        Raises:
            InvalidCredentials: For any mismatch or unverified account
        """
        identity = self.repository.find_live_by_login(self._normalize_login(login))
        stored_hash = identity.password_hash if identity is not None else _DUMMY_BCRYPT_HASH
        password_valid = bcrypt.checkpw(password.encode(), stored_hash.encode())

        if identity is None or not password_valid or not identity.is_verified:
            raise InvalidCredentials("Invalid credentials")
        return identity

    def get_statistics(self) -> IdentityStatistics:
        """Counts of verified accounts; drafts are never included."""
        return IdentityStatistics(
            total=self.repository.count_live(),
            by_role={role.value: self.repository.count_live(role) for role in Role},
        )

    def purge_stale_drafts(self) -> int:
        """Delete drafts older than the retention window. Returns the count."""
        deleted = self.repository.delete_stale_drafts(
            timedelta(hours=self.draft_retention_hours)
        )
        if deleted:
            logger.info(f"Purged {deleted} stale draft identit(y/ies)")
        return deleted

    # Background task handlers

    def bind_tasks(self, runner: BackgroundTaskRunner) -> None:
        """Register this service's task handlers and terminal-failure hooks."""
        runner.register(
            TaskKind.FACE_ENROLLMENT, self.run_face_enrollment, self.fail_face_enrollment
        )
        runner.register(TaskKind.NOTIFICATION, self.run_notification, self.fail_notification)

    def run_face_enrollment(self, payload: dict[str, Any]) -> None:
        identity_id: UUID = payload["identity_id"]
        result = self.gateway.enroll_face(
            identity_id,
            payload["name"],
            payload["email"],
            payload["document"],
            force=payload.get("force", False),
        )
        updated = self.repository.update_fields(
            identity_id,
            face_enrollment_status=FaceEnrollmentStatus.COMPLETED,
            face_enrollment_ref=result.reference,
            face_enrollment_error=None,
        )
        if not updated:
            logger.warning(f"Face enrolled for missing identity {identity_id}")
            return
        self.repository.mark_ready_if_gates_satisfied(identity_id)
        logger.info(f"Face enrollment completed for identity {identity_id}")

    def fail_face_enrollment(self, payload: dict[str, Any], error: str) -> None:
        self.repository.update_fields(
            payload["identity_id"],
            face_enrollment_status=FaceEnrollmentStatus.FAILED,
            face_enrollment_error=error,
        )

    def run_notification(self, payload: dict[str, Any]) -> None:
        self.email_sender.send_otp_code(payload["email"], payload["code"])
        self.otp_repository.mark_sent(payload["otp_id"])

    def fail_notification(self, payload: dict[str, Any], error: str) -> None:
        self.otp_repository.mark_delivery_failed(payload["otp_id"])
        logger.error(f"OTP delivery to {payload['email']} abandoned: {error}")

    # Internals

    def _read_document(self, identity_id: UUID, document: DocumentImage) -> IdVerificationStatus:
        """Run OCR and record the outcome on the ID-verification record."""
        try:
            outcome = self.gateway.extract_document_fields(document)
        except ExternalServiceTransient as e:
            logger.warning(f"OCR unavailable for identity {identity_id}, routing to review: {e}")
            status = IdVerificationStatus.MANUAL_REVIEW
            self.repository.update_verification(
                identity_id, status=status, review_note=f"OCR unavailable: {e}"
            )
            return status
        except ExternalServiceConflict as e:
            logger.warning(f"OCR rejected document for identity {identity_id}: {e}")
            status = IdVerificationStatus.REJECTED
            self.repository.update_verification(identity_id, status=status, review_note=str(e))
            return status
        except Exception as e:
            # The draft is already stored; OTP and enrollment must still be issued
            logger.exception(f"Unexpected OCR failure for identity {identity_id}")
            status = IdVerificationStatus.MANUAL_REVIEW
            self.repository.update_verification(
                identity_id, status=status, review_note=f"OCR failed: {e.__class__.__name__}"
            )
            return status

        if (
            outcome.status == ExtractionStatus.SUCCEEDED
            and outcome.fields is not None
            and outcome.fields.is_usable
        ):
            status = IdVerificationStatus.APPROVED
            self.repository.update_verification(
                identity_id,
                status=status,
                full_name=outcome.fields.full_name,
                birth_date=outcome.fields.birth_date,
                document_number=outcome.fields.document_number,
            )
        else:
            status = IdVerificationStatus.MANUAL_REVIEW
            self.repository.update_verification(
                identity_id,
                status=status,
                review_note=outcome.detail or "OCR returned no usable fields",
            )
            logger.info(f"Document for identity {identity_id} submitted for manual review")
        return status

    def _issue_otp(self, identity: Identity) -> OtpRecord:
        record = OtpRecord(
            id=uuid4(),
            identity_id=identity.id,
            code=self._generate_otp_code(),
            created_at=self._now(),
        )
        self.otp_repository.create(record)
        self.tasks.enqueue(
            TaskKind.NOTIFICATION,
            {
                "otp_id": record.id,
                "identity_id": identity.id,
                "email": identity.email,
                "code": record.code,
            },
        )
        return record

    def _enqueue_face_enrollment(
        self, identity: Identity, document: DocumentImage, force: bool = False
    ) -> None:
        self.tasks.enqueue(
            TaskKind.FACE_ENROLLMENT,
            {
                "identity_id": identity.id,
                "name": identity.full_name or identity.login,
                "email": identity.email,
                "document": document,
                "force": force,
            },
        )

    def _unsatisfied_gates(self, identity_id: UUID) -> tuple[str, ...]:
        identity = self._require(identity_id)
        verification = self.repository.get_verification(identity_id)

        gates = []
        if not identity.otp_verified:
            gates.append(GATE_OTP)
        if identity.face_enrollment_status != FaceEnrollmentStatus.COMPLETED:
            gates.append(GATE_FACE)
        if verification is None or verification.status != IdVerificationStatus.APPROVED:
            gates.append(GATE_ID)
        return tuple(gates)

    def _require(self, identity_id: UUID) -> Identity:
        identity = self.repository.get(identity_id)
        if identity is None:
            raise IdentityNotFound(str(identity_id))
        return identity

    def _normalize_login(self, login: str) -> str:
        """
        Normalize a login identifier for consistent storage and lookup.

        Applies: strip whitespace + lowercase
        """
        return login.strip().lower()

    def _generate_otp_code(self) -> str:
        """
        Generate a cryptographically secure numeric OTP.

        Returns string to preserve leading zeros.
        """
        return "".join(secrets.choice("0123456789") for _ in range(self.otp_length))

    def _hash_password(self, password: str) -> str:
        """Hash password using bcrypt with the configured cost factor."""
        return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=self.bcrypt_cost)).decode()

    def _image_ref(self, document: DocumentImage) -> str:
        digest = hashlib.sha256(document.data).hexdigest()
        return f"sha256:{digest}/{document.filename}"

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)
