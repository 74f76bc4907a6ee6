"""
Court Backend API Client

An async HTTP client for the court case management backend with:
- Bearer credentials on every call
- Envelope validation into typed errors
- One credential refresh + retry on 401/403, logout if the refresh fails
- Multipart upload and binary download
- Endpoint coverage for cases, motions, orders, documents, notifications,
  chat, staff, calendar, reports and partner exchange
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote, unquote

import httpx

from auth import CourtAuth
from config import COURT_API_URL, REQUEST_TIMEOUT_SECONDS
from errors import AuthError, NetworkError
from schemas import ApiEnvelope, Failure, error_from_failure, parse_response
from session import SessionContext

logger = logging.getLogger(__name__)


def _encode_id(value: Any) -> str:
    """Encode a path id (case numbers contain slashes)."""
    return quote(str(value), safe="")


def _clean_params(params: Optional[dict]) -> Optional[dict]:
    if not params:
        return None
    return {k: v for k, v in params.items() if v is not None}


@dataclass
class DownloadedFile:
    """A binary download with the server-provided filename."""
    filename: str
    content: bytes
    content_type: Optional[str] = None


def filename_from_disposition(header: Optional[str], fallback: str) -> str:
    """
    Extract the filename from a Content-Disposition header.

    Prefers RFC 5987 filename*=UTF-8''... over plain filename=...
    """
    if not header:
        return fallback

    match = re.search(r"filename\*\s*=\s*([^']*)'[^']*'([^;]+)", header, re.IGNORECASE)
    if match:
        return unquote(match.group(2).strip().strip('"'))

    match = re.search(r'filename\s*=\s*"([^"]+)"', header, re.IGNORECASE)
    if match:
        return match.group(1)

    match = re.search(r"filename\s*=\s*([^;]+)", header, re.IGNORECASE)
    if match:
        return match.group(1).strip()
    return fallback


class CourtClient:
    """
    Court backend API client.

    Usage:
        client = CourtClient(session)
        cases = await client.get_cases(status="Filed")
        motion = await client.update_motion_status(7, "Approved")
    """

    def __init__(
        self,
        session: SessionContext,
        base_url: str = COURT_API_URL,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )
        self.auth = CourtAuth(session, self._client)

    async def __aenter__(self) -> "CourtClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _get_headers(self, json_body: bool = True) -> dict:
        """Get headers with the current bearer token, if any."""
        headers = {"Accept": "application/json"}
        if json_body:
            headers["Content-Type"] = "application/json"
        if self.session.token:
            headers["Authorization"] = f"Bearer {self.session.token}"
        return headers

    async def _send(
        self,
        method: str,
        endpoint: str,
        params: dict = None,
        json_data: Any = None,
        files: dict = None,
        data: dict = None,
    ) -> httpx.Response:
        try:
            return await self._client.request(
                method=method,
                url=endpoint,
                headers=self._get_headers(json_body=files is None),
                params=_clean_params(params),
                json=json_data,
                files=files,
                data=data,
            )
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", method, endpoint, e)
            raise NetworkError(str(e) or "Network error. Please check your connection.") from e

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict = None,
        json_data: Any = None,
        files: dict = None,
        data: dict = None,
        retry_auth: bool = True,
    ) -> ApiEnvelope:
        """
        Make an authenticated request to the backend.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            endpoint: API endpoint relative to /api (e.g., "/cases")
            params: Query parameters (None values dropped)
            json_data: JSON body for POST/PUT
            files: Multipart files (switches the body to multipart)
            data: Multipart form fields
            retry_auth: Refresh credentials and retry once on AuthError

        Returns:
            The validated response envelope

        Raises:
            NetworkError, RequestError, ParseError, AuthError
        """
        response = await self._send(method, endpoint, params, json_data, files, data)
        result = parse_response(response)

        if isinstance(result, Failure):
            error = error_from_failure(result)
            logger.debug(
                "%s %s -> %s %s", method, endpoint, result.status, result.error.code
            )
            if isinstance(error, AuthError) and retry_auth:
                await self.auth.refresh_access_token()
                return await self._request(
                    method, endpoint, params, json_data, files, data, retry_auth=False
                )
            raise error

        envelope = result.envelope
        if envelope.token:
            self.session.set_tokens(envelope.token, envelope.refresh_token)
        return envelope

    async def get(self, endpoint: str, params: dict = None) -> Any:
        """Make a GET request and return the data payload."""
        return (await self._request("GET", endpoint, params=params)).data

    async def post(self, endpoint: str, data: Any = None) -> Any:
        """Make a POST request."""
        return (await self._request("POST", endpoint, json_data=data)).data

    async def put(self, endpoint: str, data: Any = None) -> Any:
        """Make a PUT request."""
        return (await self._request("PUT", endpoint, json_data=data)).data

    async def delete(self, endpoint: str) -> Any:
        """Make a DELETE request."""
        return (await self._request("DELETE", endpoint)).data

    # ========== Cases Endpoints ==========

    async def get_cases(
        self,
        status: str = None,
        case_type: str = None,
        search: str = None,
        assigned_to: str = None,
        page: int = None,
        limit: int = None,
    ) -> List[dict]:
        """Get cases with optional filtering."""
        params = {
            "status": status,
            "type": case_type,
            "search": search,
            "assignedTo": assigned_to,
            "page": page,
            "limit": limit,
        }
        return await self.get("/cases", params=params) or []

    async def get_case(self, case_id: str) -> dict:
        """Get a specific case by ID."""
        return await self.get(f"/cases/{_encode_id(case_id)}")

    async def create_case(self, case_data: dict) -> dict:
        """Create a new case. The server issues the case number."""
        return await self.post("/cases", data=case_data)

    async def update_case(self, case_id: str, updates: dict) -> dict:
        """Update an existing case."""
        return await self.put(f"/cases/{_encode_id(case_id)}", data=updates)

    async def delete_case(self, case_id: str) -> Any:
        """Delete a case."""
        return await self.delete(f"/cases/{_encode_id(case_id)}")

    async def assign_lawyer_to_case(self, case_id: str, lawyer_id: str) -> dict:
        """Assign a lawyer to a case."""
        return await self.put(
            f"/cases/{_encode_id(case_id)}/assign-lawyer", data={"lawyerId": lawyer_id}
        )

    async def request_case_assignment(self, case_id: str) -> dict:
        """Request assignment to a case (lawyers only)."""
        return await self.post(f"/cases/{_encode_id(case_id)}/request-assignment")

    # ========== Calendar Endpoints ==========

    async def get_hearings(self, start_date: str = None, end_date: str = None) -> List[dict]:
        """Get scheduled hearings."""
        params = {"startDate": start_date, "endDate": end_date}
        return await self.get("/calendar/hearings", params=params) or []

    async def get_hearings_by_date(self, date: str) -> List[dict]:
        """Get hearings on a given date (YYYY-MM-DD)."""
        return await self.get(f"/calendar/hearings/{_encode_id(date)}") or []

    async def schedule_hearing(self, case_id: str, hearing_date: str, **details) -> dict:
        """Schedule a hearing for a case."""
        payload = {"caseId": case_id, "hearingDate": hearing_date}
        payload.update({k: v for k, v in details.items() if v is not None})
        return await self.post("/calendar/hearings", data=payload)

    # ========== Motions Endpoints ==========

    async def get_motions(
        self,
        status: str = None,
        case_id: str = None,
        page: int = None,
        limit: int = None,
    ) -> List[dict]:
        """Get motions with optional filtering."""
        params = {"status": status, "caseId": case_id, "page": page, "limit": limit}
        return await self.get("/motions", params=params) or []

    async def create_motion(self, motion_data: dict) -> dict:
        """File a new motion."""
        return await self.post("/motions", data=motion_data)

    async def update_motion_status(self, motion_id: Any, status: str, notes: str = None) -> dict:
        """Approve or reject a motion."""
        return await self.put(
            f"/motions/{_encode_id(motion_id)}/status",
            data={"status": status, "notes": notes},
        )

    async def get_pending_motions_count(self) -> int:
        data = await self.get("/motions/pending-count") or {}
        return int(data.get("count", 0))

    # ========== Orders Endpoints ==========

    async def get_orders(
        self,
        status: str = None,
        case_id: str = None,
        page: int = None,
        limit: int = None,
    ) -> List[dict]:
        """Get orders with optional filtering."""
        params = {"status": status, "caseId": case_id, "page": page, "limit": limit}
        return await self.get("/orders", params=params) or []

    async def create_order(self, order_data: dict) -> dict:
        """Draft a new order."""
        return await self.post("/orders", data=order_data)

    async def sign_order(self, order_id: Any) -> dict:
        """Sign a drafted order."""
        return await self.put(f"/orders/{_encode_id(order_id)}/sign")

    async def get_draft_orders_count(self) -> int:
        data = await self.get("/orders/draft-count") or {}
        return int(data.get("count", 0))

    # ========== Documents Endpoints ==========

    async def get_documents(
        self,
        case_id: str = None,
        doc_type: str = None,
        status: str = None,
        page: int = None,
        limit: int = None,
    ) -> List[dict]:
        """Get documents with optional filtering."""
        params = {"caseId": case_id, "type": doc_type, "status": status, "page": page, "limit": limit}
        return await self.get("/documents", params=params) or []

    async def upload_document(
        self,
        filename: str,
        content: bytes,
        case_id: str,
        doc_type: str,
        description: str = None,
        content_type: str = "application/octet-stream",
    ) -> dict:
        """Upload a document as multipart form data."""
        form = {"caseId": case_id, "type": doc_type}
        if description:
            form["description"] = description
        envelope = await self._request(
            "POST",
            "/documents/upload",
            files={"file": (filename, content, content_type)},
            data=form,
        )
        return envelope.data

    async def download_document(self, document_id: Any) -> DownloadedFile:
        """Download a document's binary content."""
        endpoint = f"/documents/{_encode_id(document_id)}/download"
        response = await self._send("GET", endpoint)

        if response.status_code in (401, 403):
            await self.auth.refresh_access_token()
            response = await self._send("GET", endpoint)

        if not response.is_success:
            # Error bodies are regular envelopes
            result = parse_response(response)
            if isinstance(result, Failure):
                raise error_from_failure(result)

        return DownloadedFile(
            filename=filename_from_disposition(
                response.headers.get("content-disposition"), fallback=str(document_id)
            ),
            content=response.content,
            content_type=response.headers.get("content-type"),
        )

    async def delete_document(self, document_id: Any) -> Any:
        return await self.delete(f"/documents/{_encode_id(document_id)}")

    # ========== Notifications Endpoints ==========

    async def get_notifications(self, unread_only: bool = False, page: int = None, limit: int = None) -> List[dict]:
        params = {"unreadOnly": "true" if unread_only else None, "page": page, "limit": limit}
        return await self.get("/notifications", params=params) or []

    async def mark_notification_read(self, notification_id: Any) -> Any:
        return await self.put(f"/notifications/{_encode_id(notification_id)}/read")

    async def mark_all_notifications_read(self) -> Any:
        return await self.put("/notifications/read-all")

    async def delete_notification(self, notification_id: Any) -> Any:
        return await self.delete(f"/notifications/{_encode_id(notification_id)}")

    # ========== Chat Endpoints ==========

    async def get_conversations(self) -> List[dict]:
        return await self.get("/chat/conversations") or []

    async def get_messages(self, user_id: str) -> List[dict]:
        return await self.get(f"/chat/messages/{_encode_id(user_id)}") or []

    async def send_message(self, receiver_id: str, message: str) -> dict:
        return await self.post("/chat/send", data={"receiverId": receiver_id, "message": message})

    async def mark_chat_read(self, user_id: str) -> Any:
        return await self.put(f"/chat/read/{_encode_id(user_id)}")

    async def get_unread_chat_count(self) -> int:
        data = await self.get("/chat/unread-count") or {}
        return int(data.get("count", 0))

    # ========== Users / Staff Endpoints ==========

    async def get_users(
        self,
        role: str = None,
        department: str = None,
        status: str = None,
        page: int = None,
        limit: int = None,
    ) -> List[dict]:
        """Get staff directory entries."""
        params = {"role": role, "department": department, "status": status, "page": page, "limit": limit}
        return await self.get("/users", params=params) or []

    async def get_profile(self) -> dict:
        return await self.get("/users/profile")

    async def get_lawyers(self) -> List[dict]:
        return await self.get("/users/lawyers") or []

    async def get_judges(self) -> List[dict]:
        return await self.get("/users/judges") or []

    # ========== Reports / Partners Endpoints ==========

    async def get_dashboard_stats(self) -> Dict[str, Any]:
        return await self.get("/reports/dashboard-stats") or {}

    async def get_partner_exchanges(self) -> List[dict]:
        return await self.get("/partners") or []
