"""
HTTP verification gateway - Implements VerificationGateway protocol.

Talks to the OCR backend and the face-recognition (AFRS) backend with
httpx. Every call carries the configured timeout. Responses are
classified for the domain:

    Outcome                        OCR                     Face enrollment
    2xx with name or doc number    SUCCEEDED               EnrollmentResult
    2xx without usable fields      MANUAL_REVIEW           -
    202 / "review_required" 4xx    MANUAL_REVIEW           -
    other 4xx                      ExternalServiceConflict ExternalServiceConflict
    5xx, timeout, transport error  ExternalServiceTransient ExternalServiceTransient
"""

import logging
from datetime import date
from typing import Any
from uuid import UUID

import httpx

from idverify.domain.exceptions import ExternalServiceConflict, ExternalServiceTransient
from idverify.domain.models import (
    DocumentImage,
    EnrollmentResult,
    ExtractedFields,
    ExtractionOutcome,
    ExtractionStatus,
)

logger = logging.getLogger(__name__)

REVIEW_REQUIRED = "review_required"


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _error_message(response: httpx.Response, default: str) -> str:
    body = _json_body(response)
    return str(body.get("message") or body.get("detail") or default)


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value).strip() or None


def _parse_date(value: Any) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


class HttpVerificationGateway:
    """
    Implements VerificationGateway protocol via httpx.

    Uses structural subtyping - no explicit inheritance from Protocol.
    Owns a single httpx.Client between connect() and close().
    """

    def __init__(
        self,
        ocr_base_url: str,
        face_base_url: str,
        ocr_api_key: str | None = None,
        face_api_key: str | None = None,
        timeout: float = 30.0,
        enrollment_source: str = "id_card",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """
        Initialize the gateway (no connection is opened yet).

        Args:
            ocr_base_url: Base URL of the OCR backend
            face_base_url: Base URL of the face-recognition backend
            ocr_api_key: Sent as x-api-key to the OCR backend
            face_api_key: Sent as x-api-key to the face backend
            timeout: Per-request timeout in seconds
            enrollment_source: Source tag sent with each enrollment
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.ocr_base_url = ocr_base_url.rstrip("/")
        self.face_base_url = face_base_url.rstrip("/")
        self.ocr_api_key = ocr_api_key
        self.face_api_key = face_api_key
        self.timeout = timeout
        self.enrollment_source = enrollment_source
        self._transport = transport
        self._client: httpx.Client | None = None

    def connect(self) -> None:
        if self._client is None:
            self._client = httpx.Client(
                timeout=httpx.Timeout(self.timeout), transport=self._transport
            )

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "HttpVerificationGateway":
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            raise RuntimeError("Verification gateway is not connected")
        return self._client

    def extract_document_fields(self, document: DocumentImage) -> ExtractionOutcome:
        """
        Send the document image to the OCR backend.

        Returns:
            SUCCEEDED with extracted fields, or MANUAL_REVIEW when the backend
            queues the document for a human

        Raises:
            ExternalServiceTransient: timeout, transport error or 5xx
            ExternalServiceConflict: any other 4xx
        """
        response = self._send(
            "OCR",
            "POST",
            f"{self.ocr_base_url}/extract",
            content=document.data,
            headers=self._headers(
                self.ocr_api_key, {"Content-Type": "application/octet-stream"}
            ),
        )
        body = _json_body(response)

        if response.status_code == httpx.codes.ACCEPTED or body.get("status") == REVIEW_REQUIRED:
            detail = str(body.get("message") or "Submitted for manual verification")
            return ExtractionOutcome(status=ExtractionStatus.MANUAL_REVIEW, detail=detail)

        if response.is_error:
            raise ExternalServiceConflict(
                _error_message(response, "OCR backend rejected the document"),
                status_code=response.status_code,
            )

        fields = body.get("fields", body)
        if not isinstance(fields, dict):
            logger.warning("OCR response carried no field mapping")
            return ExtractionOutcome(
                status=ExtractionStatus.MANUAL_REVIEW, detail="OCR returned no fields"
            )

        extracted = ExtractedFields(
            full_name=_text(fields.get("full_name")),
            birth_date=_parse_date(fields.get("birth_date")),
            document_number=_text(fields.get("document_number")),
        )
        if not extracted.is_usable:
            return ExtractionOutcome(
                status=ExtractionStatus.MANUAL_REVIEW,
                fields=extracted,
                detail="OCR returned no name or document number",
            )
        return ExtractionOutcome(status=ExtractionStatus.SUCCEEDED, fields=extracted)

    def enroll_face(
        self,
        identity_id: UUID,
        name: str,
        email: str,
        document: DocumentImage,
        force: bool = False,
    ) -> EnrollmentResult:
        """
        Enroll the face on the ID document, keyed by identity id.

        Raises:
            ExternalServiceTransient: timeout, transport error or 5xx
            ExternalServiceConflict: duplicate enrollment, missing endpoint,
                other 4xx, or an explicit success=false body
        """
        logger.info(f"Enrolling face for identity {identity_id}")
        response = self._send(
            "Face enrollment",
            "POST",
            f"{self.face_base_url}/api/enroll/from_id",
            data={
                "person_id": str(identity_id),
                "name": name,
                "email": email,
                "source": self.enrollment_source,
                "force_enroll": "true" if force else "false",
            },
            files={"image": (document.filename, document.data, document.content_type)},
            headers=self._headers(self.face_api_key),
        )

        if response.status_code == httpx.codes.CONFLICT:
            raise ExternalServiceConflict(
                "User already enrolled or duplicate face detected", status_code=409
            )
        if response.status_code == httpx.codes.NOT_FOUND:
            raise ExternalServiceConflict(
                "Face service endpoint not found", status_code=404
            )
        if response.is_error:
            raise ExternalServiceConflict(
                _error_message(response, "Face enrollment failed"),
                status_code=response.status_code,
            )

        body = _json_body(response)
        if body.get("success") is False:
            raise ExternalServiceConflict(
                _error_message(response, "Face enrollment failed"),
                status_code=response.status_code,
            )

        reference = body.get("face_id") or body.get("person_id") or str(identity_id)
        return EnrollmentResult(reference=str(reference), raw=body)

    def _send(self, service: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue a request; infrastructure failures become ExternalServiceTransient."""
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ExternalServiceTransient(f"{service} request timed out") from e
        except httpx.TransportError as e:
            raise ExternalServiceTransient(f"{service} service unreachable: {e}") from e

        if response.is_server_error:
            logger.warning(f"{service} backend error: {response.status_code}")
            raise ExternalServiceTransient(
                _error_message(response, f"{service} service unavailable"),
                status_code=response.status_code,
            )
        return response

    def _headers(self, api_key: str | None, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {"Accept": "application/json", **(extra or {})}
        if api_key:
            headers["x-api-key"] = api_key
        return headers
