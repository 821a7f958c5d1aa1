from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

import aiohttp
from loguru import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

# ─── Errors ──────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class HttpError(Exception):
    status: int
    body: str

    def __str__(self) -> str:
        return f"HTTP {self.status}: {self.body}"


RETRYABLE_STATUSES = frozenset({429, 502, 503, 504})


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, HttpError) and exc.status in RETRYABLE_STATUSES


# ─── Response ────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Response[T]:
    status: int
    data: T
    headers: dict[str, str]


# ─── Auth ────────────────────────────────────────────────────────────


class BearerAuth:
    def __init__(self, token: str, scheme: str = "Bearer") -> None:
        self._token = token
        self._scheme = scheme

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"{self._scheme} {self._token}"}


# ─── Client ──────────────────────────────────────────────────────────


class HttpClient:
    """Small aiohttp wrapper shared by every remote API the tool talks to.

    Paths are joined to ``base_url``; absolute URLs are used verbatim, which
    is how paginated ``Link`` headers are followed. Idempotent reads that hit
    rate limiting or a gateway error are retried ``read_attempts`` times.
    """

    def __init__(
        self,
        base_url: str = "",
        auth: BearerAuth | None = None,
        *,
        timeout: float = 30,
        default_headers: dict[str, str] | None = None,
        read_attempts: int = 3,
        retry_delay: float = 2.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth = auth
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._default_headers = {"Accept": "application/json", **(default_headers or {})}
        self._read_attempts = read_attempts
        self._retry_delay = retry_delay
        self._session: aiohttp.ClientSession | None = None
        self._log = logger.bind(component="http")

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self._base_url}{path}"

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    def _build_headers(self) -> dict[str, str]:
        headers = dict(self._default_headers)
        if self._auth:
            headers.update(self._auth.headers())
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
        params: dict[str, Any] | None = None,
        format: Literal["json", "text"] = "json",
    ) -> Response[Any]:
        session = await self._ensure_session()
        self._log.debug("{method} {path}", method=method, path=path)

        try:
            async with session.request(
                method, self._url(path), headers=self._build_headers(), json=json, params=params
            ) as resp:
                return await self._parse(resp, format)
        except aiohttp.ClientResponseError as e:
            raise HttpError(status=e.status, body=e.message) from e
        except aiohttp.ClientError as e:
            raise HttpError(status=0, body=str(e)) from e

    async def _parse(
        self, resp: aiohttp.ClientResponse, format: Literal["json", "text"]
    ) -> Response[Any]:
        if resp.status >= 400:
            body = await resp.text()
            self._log.debug(
                "HTTP {status} from {url}: {body}",
                status=resp.status, url=str(resp.url), body=body[:500],
            )
            raise HttpError(status=resp.status, body=body)
        headers = dict(resp.headers)
        match format:
            case "json":
                raw = await resp.read()
                data = await resp.json(content_type=None) if raw else None
                return Response(status=resp.status, data=data, headers=headers)
            case "text":
                return Response(status=resp.status, data=await resp.text(), headers=headers)

    # ─── Requests ────────────────────────────────────────────────────

    async def send(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
        params: dict[str, Any] | None = None,
        format: Literal["json", "text"] = "json",
    ) -> Response[Any]:
        """Send a request and return status, body and headers.

        GET requests are retried on 429/5xx gateway errors; everything else
        is sent exactly once.
        """
        if method.upper() != "GET":
            return await self._send(method, path, json=json, params=params, format=format)

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._read_attempts),
            wait=wait_fixed(self._retry_delay),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                return await self._send(method, path, params=params, format=format)
        raise AssertionError("unreachable")

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
        params: dict[str, Any] | None = None,
        format: Literal["json", "text"] = "json",
    ) -> Any:
        response = await self.send(method, path, json=json, params=params, format=format)
        return response.data

    async def get(self, path: str, *, params: dict[str, Any] | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, *, json: dict[str, Any] | None = None) -> Any:
        return await self.request("POST", path, json=json)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)

    async def text(self, url: str) -> str:
        return await self.request("GET", url, format="text")

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def close(self) -> None:
        if self._session and not self._session.closed:
            self._log.debug("Closing HTTP session")
            await self._session.close()

    async def __aenter__(self) -> HttpClient:
        await self._ensure_session()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()
