"""
Shared test fixtures and configuration.

This module provides pytest fixtures for:
- In-memory identity and OTP repositories (stateful fakes of the ports)
- A scriptable verification gateway and a recording email sender
- A task runner that never really sleeps
- A fully wired RegistrationService
"""

import threading
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from uuid import UUID

import pytest

from idverify.domain.models import (
    DocumentImage,
    EnrollmentResult,
    ExtractedFields,
    ExtractionOutcome,
    ExtractionStatus,
    FaceEnrollmentStatus,
    Identity,
    IdVerification,
    IdVerificationStatus,
    OtpRecord,
    RegistrationStep,
    Role,
)
from idverify.domain.ports import PromotionResult
from idverify.domain.registration import RegistrationService
from idverify.domain.tasks import BackgroundTaskRunner


class InMemoryIdentityRepository:
    """IdentityRepository fake. A single lock makes promote() atomic."""

    def __init__(self) -> None:
        self.identities: dict[UUID, Identity] = {}
        self.verifications: dict[UUID, IdVerification] = {}
        self.lock = threading.RLock()

    def create_draft(self, identity: Identity, verification: IdVerification) -> None:
        with self.lock:
            self.identities[identity.id] = replace(identity)
            self.verifications[identity.id] = replace(verification)

    def get(self, identity_id: UUID) -> Identity | None:
        with self.lock:
            identity = self.identities.get(identity_id)
            return replace(identity) if identity else None

    def get_verification(self, identity_id: UUID) -> IdVerification | None:
        with self.lock:
            verification = self.verifications.get(identity_id)
            return replace(verification) if verification else None

    def find_live_by_login(self, login: str) -> Identity | None:
        with self.lock:
            for identity in self.identities.values():
                if identity.login == login and not identity.is_draft:
                    return replace(identity)
        return None

    def update_fields(self, identity_id: UUID, **fields) -> bool:
        with self.lock:
            identity = self.identities.get(identity_id)
            if identity is None or not identity.is_draft:
                return False
            self.identities[identity_id] = replace(identity, **fields)
            return True

    def update_verification(self, identity_id: UUID, **fields) -> bool:
        with self.lock:
            verification = self.verifications.get(identity_id)
            if verification is None:
                return False
            self.verifications[identity_id] = replace(verification, **fields)
            return True

    def _gates_satisfied(self, identity_id: UUID) -> bool:
        identity = self.identities[identity_id]
        verification = self.verifications.get(identity_id)
        return (
            identity.otp_verified
            and identity.face_enrollment_status == FaceEnrollmentStatus.COMPLETED
            and verification is not None
            and verification.status == IdVerificationStatus.APPROVED
        )

    def mark_ready_if_gates_satisfied(self, identity_id: UUID) -> bool:
        with self.lock:
            identity = self.identities.get(identity_id)
            if identity is None or not identity.is_draft or not self._gates_satisfied(identity_id):
                return False
            identity.registration_step = RegistrationStep.STEP3
            return True

    def promote(self, identity_id: UUID) -> PromotionResult:
        with self.lock:
            identity = self.identities.get(identity_id)
            if identity is None:
                return PromotionResult.NOT_FOUND
            if identity.is_verified:
                return PromotionResult.ALREADY_VERIFIED
            if not self._gates_satisfied(identity_id):
                return PromotionResult.GATES_UNSATISFIED
            if self.find_live_by_login(identity.login) is not None:
                return PromotionResult.LOGIN_TAKEN

            identity.is_draft = False
            identity.is_verified = True
            identity.registration_step = RegistrationStep.COMPLETED
            identity.registration_completed = datetime.now(timezone.utc)
            return PromotionResult.PROMOTED

    def count_live(self, role: Role | None = None) -> int:
        with self.lock:
            return sum(
                1
                for identity in self.identities.values()
                if not identity.is_draft and (role is None or identity.role == role)
            )

    def delete_stale_drafts(self, older_than: timedelta) -> int:
        cutoff = datetime.now(timezone.utc) - older_than
        with self.lock:
            stale = [
                identity_id
                for identity_id, identity in self.identities.items()
                if identity.is_draft and identity.registration_started < cutoff
            ]
            for identity_id in stale:
                del self.identities[identity_id]
                self.verifications.pop(identity_id, None)
            return len(stale)


class InMemoryOtpRepository:
    def __init__(self) -> None:
        self.records: dict[UUID, OtpRecord] = {}
        self.lock = threading.Lock()

    def create(self, record: OtpRecord) -> None:
        with self.lock:
            self.records[record.id] = replace(record)

    def consume(self, identity_id: UUID, code: str) -> bool:
        with self.lock:
            owned = [otp_id for otp_id, r in self.records.items() if r.identity_id == identity_id]
            if not any(self.records[otp_id].code == code for otp_id in owned):
                return False
            for otp_id in owned:
                del self.records[otp_id]
            return True

    def mark_sent(self, otp_id: UUID) -> None:
        with self.lock:
            if otp_id in self.records:
                self.records[otp_id].email_sent = True
                self.records[otp_id].sent_at = datetime.now(timezone.utc)

    def mark_delivery_failed(self, otp_id: UUID) -> None:
        with self.lock:
            if otp_id in self.records:
                self.records[otp_id].email_sent = False
                self.records[otp_id].delivery_failed = True

    def list_for_identity(self, identity_id: UUID) -> list[OtpRecord]:
        with self.lock:
            return [
                replace(record)
                for record in self.records.values()
                if record.identity_id == identity_id
            ]


class FakeGateway:
    """
    Scriptable VerificationGateway.

    extraction / extraction_error control the OCR call; enroll_errors are
    raised by successive enroll_face calls before it starts succeeding.
    """

    def __init__(self) -> None:
        self.extraction = ExtractionOutcome(
            status=ExtractionStatus.SUCCEEDED,
            fields=ExtractedFields(
                full_name="Alice Doe",
                birth_date=date(1990, 1, 2),
                document_number="ID-123456",
            ),
        )
        self.extraction_error: Exception | None = None
        self.enroll_errors: list[Exception] = []
        self.enroll_calls: list[dict] = []

    def extract_document_fields(self, document: DocumentImage) -> ExtractionOutcome:
        if self.extraction_error is not None:
            raise self.extraction_error
        return self.extraction

    def enroll_face(
        self,
        identity_id: UUID,
        name: str,
        email: str,
        document: DocumentImage,
        force: bool = False,
    ) -> EnrollmentResult:
        self.enroll_calls.append(
            {"identity_id": identity_id, "name": name, "email": email, "force": force}
        )
        if self.enroll_errors:
            raise self.enroll_errors.pop(0)
        return EnrollmentResult(reference=f"face-{identity_id}", raw={"success": True})


class RecordingEmailSender:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.errors: list[Exception] = []

    def send_otp_code(self, email: str, code: str) -> None:
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append((email, code))

    def last_code_for(self, email: str) -> str:
        return [code for sent_to, code in self.sent if sent_to == email][-1]


@pytest.fixture
def identity_repository() -> InMemoryIdentityRepository:
    return InMemoryIdentityRepository()


@pytest.fixture
def otp_repository() -> InMemoryOtpRepository:
    return InMemoryOtpRepository()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def sleeps() -> list[float]:
    """Backoff delays requested by the runner, in order."""
    return []


@pytest.fixture
def runner(sleeps: list[float]) -> BackgroundTaskRunner:
    return BackgroundTaskRunner(sleep=sleeps.append)


@pytest.fixture
def service(
    identity_repository: InMemoryIdentityRepository,
    otp_repository: InMemoryOtpRepository,
    email_sender: RecordingEmailSender,
    gateway: FakeGateway,
    runner: BackgroundTaskRunner,
) -> RegistrationService:
    """RegistrationService wired to the in-memory fakes, handlers bound."""
    service = RegistrationService(
        repository=identity_repository,
        otp_repository=otp_repository,
        email_sender=email_sender,
        gateway=gateway,
        tasks=runner,
        bcrypt_cost=4,
    )
    service.bind_tasks(runner)
    return service
