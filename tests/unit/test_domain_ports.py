"""
Unit tests for domain ports, enums and exceptions.

Tests verify:
- Port interfaces are properly defined
- Enums serialize to their wire values
- Exceptions are properly structured
- Domain purity (zero framework imports)
"""

import json
import subprocess
from enum import Enum

import pytest

from idverify.domain.exceptions import (
    ExternalServiceConflict,
    ExternalServiceError,
    ExternalServiceTransient,
    IdentityNotFound,
    InvalidCredentials,
    InvalidOtp,
    LoginAlreadyClaimed,
    PreconditionFailed,
    RegistrationError,
)
from idverify.domain.models import (
    FaceEnrollmentStatus,
    IdVerificationStatus,
    RegistrationStep,
    Role,
)
from idverify.domain.ports import (
    EmailSender,
    IdentityRepository,
    OtpRepository,
    PromotionResult,
    TaskQueue,
    VerificationGateway,
)


class TestPromotionResultEnum:
    """Tests for PromotionResult enum."""

    def test_promotion_result_is_enum(self) -> None:
        assert issubclass(PromotionResult, Enum)

    def test_promotion_result_values(self) -> None:
        assert {result.value for result in PromotionResult} == {
            "promoted",
            "already_verified",
            "gates_unsatisfied",
            "login_taken",
            "not_found",
        }


class TestStatusEnums:
    """Tests for the str-mixin status enums stored and returned over HTTP."""

    def test_status_enums_are_str_mixins(self) -> None:
        for enum_cls in (Role, RegistrationStep, FaceEnrollmentStatus, IdVerificationStatus):
            assert issubclass(enum_cls, str)

    def test_id_verification_status_wire_values(self) -> None:
        assert IdVerificationStatus.PENDING == "Pending"
        assert IdVerificationStatus.APPROVED == "Approved"
        assert IdVerificationStatus.REJECTED == "Rejected"
        assert IdVerificationStatus.MANUAL_REVIEW == "Manual Review"

    def test_registration_steps(self) -> None:
        assert [step.value for step in RegistrationStep] == [
            "step1",
            "step2",
            "step3",
            "completed",
        ]

    def test_enums_json_serializable(self) -> None:
        """str mixin allows direct JSON serialization."""
        assert json.dumps(FaceEnrollmentStatus.FAILED) == '"failed"'
        assert json.dumps(Role.PATIENT) == '"patient"'


class TestPortProtocols:
    """Tests for the port interfaces."""

    @pytest.mark.parametrize(
        ("port", "methods"),
        [
            (
                IdentityRepository,
                [
                    "create_draft",
                    "get",
                    "get_verification",
                    "find_live_by_login",
                    "update_fields",
                    "update_verification",
                    "mark_ready_if_gates_satisfied",
                    "promote",
                    "count_live",
                    "delete_stale_drafts",
                ],
            ),
            (OtpRepository, ["create", "consume", "mark_sent", "mark_delivery_failed"]),
            (EmailSender, ["send_otp_code"]),
            (VerificationGateway, ["extract_document_fields", "enroll_face"]),
            (TaskQueue, ["enqueue"]),
        ],
    )
    def test_port_defines_methods(self, port: type, methods: list[str]) -> None:
        for method in methods:
            assert hasattr(port, method), f"{port.__name__} lacks {method}"

    def test_in_memory_fakes_satisfy_ports(self, identity_repository, otp_repository) -> None:
        """Structural subtyping: fakes need no inheritance."""

        def accepts(repo: IdentityRepository, otps: OtpRepository) -> None:
            pass

        accepts(identity_repository, otp_repository)
        assert type(identity_repository).__bases__ == (object,)


class TestDomainExceptions:
    """Tests for domain exceptions."""

    @pytest.mark.parametrize(
        "exc_cls",
        [LoginAlreadyClaimed, IdentityNotFound, InvalidOtp, PreconditionFailed, InvalidCredentials],
    )
    def test_inherits_registration_error(self, exc_cls: type) -> None:
        assert issubclass(exc_cls, RegistrationError)

    def test_precondition_failed_carries_gates(self) -> None:
        error = PreconditionFailed("Verification gates not satisfied: otp", gates=("otp",))
        assert error.gates == ("otp",)
        assert "otp" in str(error)

    def test_external_service_errors_carry_status_code(self) -> None:
        error = ExternalServiceConflict("duplicate", status_code=409)
        assert error.status_code == 409
        assert ExternalServiceTransient("timeout").status_code is None

    def test_external_service_errors_are_not_registration_errors(self) -> None:
        assert issubclass(ExternalServiceTransient, ExternalServiceError)
        assert issubclass(ExternalServiceConflict, ExternalServiceError)
        assert not issubclass(ExternalServiceError, RegistrationError)


class TestDomainPurity:
    """Tests for domain purity - zero framework imports."""

    @pytest.mark.parametrize(
        "pattern",
        [
            "from fastapi",
            "import fastapi",
            "from pydantic",
            "import pydantic",
            "from psycopg",
            "import psycopg",
            "from httpx",
            "import httpx",
        ],
    )
    def test_no_framework_imports_in_domain(self, pattern: str) -> None:
        result = subprocess.run(
            ["grep", "-r", pattern, "idverify/domain/"],
            capture_output=True,
            text=True,
        )
        assert result.returncode != 0, f"Framework import found: {result.stdout}"
