"""Planka API client: the remote gateway for boards, lists and cards."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import httpx
import orjson
from pydantic import ValidationError

from planky.errors import (
    InvalidRequest,
    NetworkUnavailable,
    NotFound,
    RateLimited,
    ServerError,
    Unauthorized,
)
from planky.logging_setup import DIAGNOSTICS_LOGGER, get_logger
from planky.models import RemoteBoard, RemoteCard, RemoteComment, RemoteList
from planky.settings import settings
from planky.utils import format_remote_timestamp, mask_bearer, redact_payload, truncate

logger = get_logger(__name__)
diagnostics = get_logger(DIAGNOSTICS_LOGGER)

# Planka sorts by position; appending with a large gap keeps new items last
DEFAULT_POSITION = 65535

SECRET_KEYS = frozenset({"password", "token", "accessToken"})
LOGIN_SECRET_KEYS = SECRET_KEYS | {"item"}


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def classify_response(response: httpx.Response) -> None:
    """
    Raise the classified failure for an unsuccessful response.

    Args:
        response: Response from the Planka API

    Raises:
        Unauthorized: 401/403
        NotFound: 404
        RateLimited: 429
        ServerError: 5xx
        InvalidRequest: any other 4xx
    """
    status = response.status_code
    if status < 400:
        return

    detail = f"HTTP {status} {response.request.method} {response.request.url.path}"
    if status in (401, 403):
        raise Unauthorized(detail, status)
    if status == 404:
        raise NotFound(detail, status)
    if status == 429:
        raise RateLimited(detail, status, retry_after=_retry_after(response))
    if status >= 500:
        raise ServerError(detail, status)
    raise InvalidRequest(f"{detail}: {truncate(response.text, 200)}", status)


class PlankaClient:
    """Async HTTP client for the Planka REST API.

    Pure translation layer: every call either returns a normalized payload or
    raises a classified `RemoteError`. Retry policy lives in the outbound queue.
    """

    def __init__(
        self,
        server_url: str,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize Planka client.

        Args:
            server_url: Planka base URL, e.g. "https://planka.example.com"
            token: Access token from `login`
            timeout: Request timeout in seconds (defaults to settings)
            transport: Custom httpx transport (used by tests)
        """
        self.base_url = server_url.rstrip("/")
        self.token = token
        self.timeout = timeout or settings.request_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the underlying httpx client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        """Close the HTTP connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self, authenticated: bool, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if authenticated:
            if not self.token:
                raise Unauthorized("No access token; log in first")
            headers["Authorization"] = f"Bearer {self.token}"
        if extra:
            headers.update(extra)
        return headers

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def _log_request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[Dict[str, Any]],
        secret_keys: frozenset,
    ) -> None:
        if not settings.diagnostics_enabled:
            return
        shown = {
            key: mask_bearer(value) if key.lower() == "authorization" else value
            for key, value in headers.items()
        }
        diagnostics.debug(
            "HTTP request",
            extra={
                "direction": "out",
                "method": method,
                "url": url,
                "headers": shown,
                "body": redact_payload(body, secret_keys) if body is not None else None,
            },
        )

    def _log_response(self, response: httpx.Response, secret_keys: frozenset) -> None:
        if not settings.diagnostics_enabled:
            return
        try:
            body: Any = redact_payload(response.json(), secret_keys)
            text = orjson.dumps(body).decode("utf-8")
        except ValueError:
            text = response.text
        diagnostics.debug(
            "HTTP response",
            extra={
                "direction": "in",
                "status": response.status_code,
                "body": truncate(text, settings.diagnostics_max_body),
            },
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
        headers: Optional[Dict[str, str]] = None,
        secret_keys: frozenset = SECRET_KEYS,
    ) -> Dict[str, Any]:
        """
        Send a request and return the decoded JSON body.

        Raises:
            RemoteError: Classified failure
        """
        url = f"{self.base_url}{endpoint}"
        request_headers = self._headers(authenticated, headers)
        self._log_request(method, url, request_headers, data, secret_keys)

        try:
            response = await self._get_client().request(
                method, url, headers=request_headers, json=data
            )
        except httpx.TransportError as e:
            logger.warning(
                "Planka unreachable",
                extra={"method": method, "endpoint": endpoint, "error": str(e)},
            )
            raise NetworkUnavailable(f"{method} {endpoint}: {e}") from e

        self._log_response(response, secret_keys)
        logger.debug(
            "Planka request",
            extra={"method": method, "endpoint": endpoint, "status": response.status_code},
        )
        classify_response(response)

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            raise InvalidRequest(f"Non-JSON response from {endpoint}", response.status_code) from e
        if not isinstance(body, dict):
            raise InvalidRequest(f"Unexpected response shape from {endpoint}", response.status_code)
        return body

    @staticmethod
    def _parse(model: Any, payload: Any, endpoint: str) -> Any:
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise InvalidRequest(f"Malformed payload from {endpoint}: {e.error_count()} errors") from e

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def login(self, username: str, password: str) -> str:
        """
        Exchange credentials for an access token and keep it on the client.

        Args:
            username: Email or username
            password: Account password

        Returns:
            The access token
        """
        logger.info("Logging in to Planka", extra={"server_url": self.base_url, "username": username})
        body = await self._request(
            "POST",
            "/api/access-tokens",
            {"emailOrUsername": username, "password": password},
            authenticated=False,
            secret_keys=LOGIN_SECRET_KEYS,
        )
        token = body.get("item")
        if not isinstance(token, str) or not token:
            raise InvalidRequest("Login response carried no token")
        self.token = token
        return token

    # ------------------------------------------------------------------
    # Boards and lists
    # ------------------------------------------------------------------

    async def list_boards(self) -> List[RemoteBoard]:
        """
        Fetch all boards visible to the user.

        Returns:
            Boards with the name of their owning Planka project
        """
        logger.info("Fetching Planka boards")
        body = await self._request("GET", "/api/projects")
        project_names = {
            str(project.get("id")): project.get("name")
            for project in body.get("items", [])
        }
        boards = []
        for raw in body.get("included", {}).get("boards", []):
            board = self._parse(RemoteBoard, raw, "/api/projects")
            if board.project_id is not None:
                board.project_name = project_names.get(board.project_id)
            boards.append(board)
        return sorted(boards, key=lambda b: ((b.project_name or ""), b.position))

    async def fetch_board(self, board_id: str) -> Tuple[List[RemoteList], List[RemoteCard]]:
        """
        Fetch a board's lists and cards in one request.

        Args:
            board_id: Planka board ID

        Returns:
            (lists, cards) as seen at the same instant
        """
        endpoint = f"/api/boards/{board_id}"
        logger.info("Fetching Planka board", extra={"board_id": board_id})
        body = await self._request("GET", endpoint)
        included = body.get("included", {})
        lists = [self._parse(RemoteList, raw, endpoint) for raw in included.get("lists", [])]
        cards = [self._parse(RemoteCard, raw, endpoint) for raw in included.get("cards", [])]
        return lists, cards

    async def list_lists(self, board_id: str) -> List[RemoteList]:
        """Fetch the lists of a board."""
        lists, _ = await self.fetch_board(board_id)
        return lists

    async def list_cards(self, board_id: str, list_ids: Optional[set] = None) -> List[RemoteCard]:
        """
        Fetch the cards of a board.

        Args:
            board_id: Planka board ID
            list_ids: Restrict to cards in these lists
        """
        _, cards = await self.fetch_board(board_id)
        if list_ids is None:
            return cards
        return [card for card in cards if card.list_id in list_ids]

    async def create_project(self, name: str) -> str:
        """Create a Planka project and return its ID."""
        logger.info("Creating Planka project", extra={"name": name})
        body = await self._request("POST", "/api/projects", {"name": name})
        project_id = body.get("item", {}).get("id")
        if project_id is None:
            raise InvalidRequest("Project creation response carried no ID")
        return str(project_id)

    async def create_board(self, project_id: str, name: str, position: int = DEFAULT_POSITION) -> RemoteBoard:
        """Create a board inside a Planka project."""
        endpoint = f"/api/projects/{project_id}/boards"
        logger.info("Creating Planka board", extra={"project_id": project_id, "name": name})
        body = await self._request("POST", endpoint, {"name": name, "position": position})
        return self._parse(RemoteBoard, body.get("item"), endpoint)

    async def create_list(self, board_id: str, name: str, position: int = DEFAULT_POSITION) -> RemoteList:
        """Create a list on a board."""
        endpoint = f"/api/boards/{board_id}/lists"
        logger.info("Creating Planka list", extra={"board_id": board_id, "name": name})
        body = await self._request("POST", endpoint, {"name": name, "position": position})
        return self._parse(RemoteList, body.get("item"), endpoint)

    # ------------------------------------------------------------------
    # Cards
    # ------------------------------------------------------------------

    async def create_card(
        self,
        list_id: str,
        name: str,
        due_date: Optional[datetime] = None,
        idempotency_key: Optional[str] = None,
        position: int = DEFAULT_POSITION,
    ) -> RemoteCard:
        """
        Create a card in a list.

        Args:
            list_id: Target list
            name: Card title
            due_date: Optional due date
            idempotency_key: Client key sent as `Idempotency-Key` for servers that honour it
            position: Sort position within the list

        Returns:
            The created card, including its revision marker
        """
        endpoint = f"/api/lists/{list_id}/cards"
        data: Dict[str, Any] = {"name": name, "position": position}
        if due_date is not None:
            data["dueDate"] = format_remote_timestamp(due_date)
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None

        logger.info("Creating Planka card", extra={"list_id": list_id})
        body = await self._request("POST", endpoint, data, headers=headers)
        return self._parse(RemoteCard, body.get("item"), endpoint)

    async def move_card(self, card_id: str, list_id: str, position: int = DEFAULT_POSITION) -> RemoteCard:
        """Move a card to another list."""
        endpoint = f"/api/cards/{card_id}"
        logger.info("Moving Planka card", extra={"card_id": card_id, "list_id": list_id})
        body = await self._request("PATCH", endpoint, {"listId": list_id, "position": position})
        return self._parse(RemoteCard, body.get("item"), endpoint)

    async def update_card(
        self,
        card_id: str,
        name: Optional[str] = None,
        due_date: Optional[datetime] = None,
        clear_due_date: bool = False,
    ) -> RemoteCard:
        """
        Update a card's title and/or due date.

        Args:
            card_id: Planka card ID
            name: New title, if changing
            due_date: New due date, if changing
            clear_due_date: Remove the due date
        """
        data: Dict[str, Any] = {}
        if name is not None:
            data["name"] = name
        if clear_due_date:
            data["dueDate"] = None
        elif due_date is not None:
            data["dueDate"] = format_remote_timestamp(due_date)
        if not data:
            raise InvalidRequest("update_card called without changes")

        endpoint = f"/api/cards/{card_id}"
        logger.info("Updating Planka card", extra={"card_id": card_id, "fields": sorted(data)})
        body = await self._request("PATCH", endpoint, data)
        return self._parse(RemoteCard, body.get("item"), endpoint)

    async def delete_card(self, card_id: str) -> None:
        """Delete a card."""
        logger.info("Deleting Planka card", extra={"card_id": card_id})
        await self._request("DELETE", f"/api/cards/{card_id}")

    async def get_card(self, card_id: str) -> RemoteCard:
        """Fetch a single card with its description."""
        endpoint = f"/api/cards/{card_id}"
        body = await self._request("GET", endpoint)
        return self._parse(RemoteCard, body.get("item"), endpoint)

    async def list_comments(self, card_id: str) -> List[RemoteComment]:
        """
        Fetch the comments on a card, oldest first.

        Planka stores comments as card actions of type "commentCard".
        """
        endpoint = f"/api/cards/{card_id}/actions"
        body = await self._request("GET", endpoint)
        users = {
            str(user.get("id")): user.get("name") or user.get("username")
            for user in body.get("included", {}).get("users", [])
        }
        comments = []
        for action in body.get("items", []):
            if action.get("type") != "commentCard":
                continue
            comments.append(
                RemoteComment(
                    id=str(action.get("id")),
                    card_id=str(action.get("cardId", card_id)),
                    text=(action.get("data") or {}).get("text", ""),
                    user_name=users.get(str(action.get("userId"))),
                    created_at=action.get("createdAt"),
                )
            )
        return sorted(comments, key=lambda c: (c.created_at is None, c.created_at))

    async def create_comment(self, card_id: str, text: str) -> str:
        """Add a comment to a card and return the comment ID."""
        logger.info("Adding Planka comment", extra={"card_id": card_id})
        body = await self._request("POST", f"/api/cards/{card_id}/comment-actions", {"text": text})
        return str(body.get("item", {}).get("id", ""))
