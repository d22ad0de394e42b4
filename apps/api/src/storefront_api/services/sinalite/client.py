"""HTTP client for the Sinalite print-fulfillment API."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Mapping, Sequence

import httpx
from loguru import logger

from storefront_api.core.settings import Settings, settings as default_settings
from storefront_api.services.sinalite.options import (
    ProductOption,
    normalize_store_code,
    parse_product_options,
    store_id_for,
)


Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[None]]

_RETRYABLE_STATUS = 429
_MIN_TOKEN_TTL_SECONDS = 60
_MAX_TOKEN_TTL_SECONDS = 86_400


class SinaliteApiError(RuntimeError):
    """Raised when Sinalite returns a non-success response."""

    def __init__(self, message: str, *, status: int, path: str, body: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.path = path
        self.body = body


class SinaliteAuthError(SinaliteApiError):
    """Raised when the client-credentials exchange fails."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _truncate(text: str, limit: int = 250) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


def clamp_token_ttl(value: Any, default: int) -> int:
    """Keep token lifetimes between one minute and one day."""

    try:
        ttl = int(float(value))
    except (TypeError, ValueError):
        ttl = default
    return min(_MAX_TOKEN_TTL_SECONDS, max(_MIN_TOKEN_TTL_SECONDS, ttl))


def as_bearer(token: str) -> str:
    stripped = str(token or "").strip()
    if not stripped:
        return ""
    return stripped if stripped.lower().startswith("bearer ") else f"Bearer {stripped}"


@dataclass(slots=True)
class SinaliteConfig:
    base_url: str
    auth_url: str
    audience: str
    client_id: str
    client_secret: str
    timeout_seconds: float = 25.0
    max_attempts: int = 5
    backoff_base_seconds: float = 0.8
    default_token_ttl_seconds: int = 1200
    token_refresh_margin_seconds: int = 60

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "SinaliteConfig":
        config = config or default_settings
        base_url = config.sinalite_base_url.rstrip("/")
        return cls(
            base_url=base_url,
            auth_url=(config.sinalite_auth_url or f"{base_url}/auth/token").rstrip("/"),
            audience=config.sinalite_audience.strip(),
            client_id=config.sinalite_client_id,
            client_secret=config.sinalite_client_secret,
            timeout_seconds=config.sinalite_timeout_seconds,
            max_attempts=max(1, config.sinalite_max_attempts),
            backoff_base_seconds=config.sinalite_backoff_base_seconds,
            default_token_ttl_seconds=config.sinalite_token_default_ttl_seconds,
            token_refresh_margin_seconds=config.sinalite_token_refresh_margin_seconds,
        )


@dataclass(slots=True)
class _CachedToken:
    bearer: str
    expires_at: datetime


class TokenCache:
    """Holds the current bearer token and hands it out until shortly before expiry."""

    def __init__(self, *, clock: Clock | None = None, refresh_margin: timedelta = timedelta(seconds=60)) -> None:
        self._clock = clock or _utcnow
        self._refresh_margin = refresh_margin
        self._entry: _CachedToken | None = None
        self.lock = asyncio.Lock()

    def get(self) -> str | None:
        entry = self._entry
        if entry is None:
            return None
        if self._clock() >= entry.expires_at - self._refresh_margin:
            return None
        return entry.bearer

    def store(self, bearer: str, *, ttl_seconds: int) -> datetime:
        expires_at = self._clock() + timedelta(seconds=ttl_seconds)
        self._entry = _CachedToken(bearer=bearer, expires_at=expires_at)
        return expires_at

    def invalidate(self) -> None:
        self._entry = None

    @property
    def expires_at(self) -> datetime | None:
        return self._entry.expires_at if self._entry else None


@dataclass
class ProductOptionsPayload:
    product_options: list[ProductOption] = field(default_factory=list)
    pricing_rows: list[dict[str, str]] = field(default_factory=list)
    metadata_rows: list[Any] = field(default_factory=list)
    raw: Any = None


@dataclass
class PriceQuote:
    price: str | None
    package_info: Any
    product_options: Any
    raw: Any


class SinaliteClient:
    """Authenticated Sinalite API access with retry on throttling and 5xx."""

    def __init__(
        self,
        config: SinaliteConfig,
        *,
        token_cache: TokenCache | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self._config = config
        self._tokens = token_cache or TokenCache(
            refresh_margin=timedelta(seconds=config.token_refresh_margin_seconds)
        )
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._sleep = sleep or asyncio.sleep

    @property
    def token_cache(self) -> TokenCache:
        return self._tokens

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def _backoff_seconds(self, attempt: int, response: httpx.Response | None = None) -> float:
        if response is not None:
            retry_after = response.headers.get("retry-after")
            if retry_after:
                try:
                    return max(0.0, float(int(retry_after.strip())))
                except ValueError:
                    pass
        return self._config.backoff_base_seconds * (2 ** (attempt - 1))

    async def fetch_with_retry(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue a request, retrying 429/5xx responses and transport failures.

        The last throttled or 5xx response is returned as-is once attempts run
        out; transport errors on the final attempt propagate.
        """

        attempts = self._config.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                response = await self._http.request(
                    method, url, timeout=self._config.timeout_seconds, **kwargs
                )
            except httpx.TransportError as exc:
                if attempt >= attempts:
                    raise
                delay = self._backoff_seconds(attempt)
                logger.warning(
                    "Sinalite request failed; retrying",
                    url=url,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(exc),
                )
                await self._sleep(delay)
                continue

            retryable = response.status_code == _RETRYABLE_STATUS or response.status_code >= 500
            if retryable and attempt < attempts:
                delay = self._backoff_seconds(attempt, response)
                logger.warning(
                    "Sinalite responded with retryable status",
                    url=url,
                    status=response.status_code,
                    attempt=attempt,
                    delay_seconds=delay,
                )
                await self._sleep(delay)
                continue
            return response

        raise RuntimeError(f"Exhausted retries for {url}")  # pragma: no cover - loop always returns

    async def get_access_token(self) -> str:
        """Return a cached bearer token, exchanging client credentials when stale."""

        cached = self._tokens.get()
        if cached:
            return cached

        async with self._tokens.lock:
            cached = self._tokens.get()
            if cached:
                return cached

            if not self._config.client_id or not self._config.client_secret:
                raise SinaliteAuthError(
                    "Sinalite client credentials are not configured",
                    status=0,
                    path=self._config.auth_url,
                )

            response = await self.fetch_with_retry(
                "POST",
                self._config.auth_url,
                json={
                    "client_id": self._config.client_id,
                    "client_secret": self._config.client_secret,
                    "audience": self._config.audience,
                    "grant_type": "client_credentials",
                },
            )
            text = response.text
            if response.status_code >= 400:
                raise SinaliteAuthError(
                    f"Sinalite auth failed ({response.status_code}): {_truncate(text)}",
                    status=response.status_code,
                    path=self._config.auth_url,
                    body=text,
                )
            try:
                payload = response.json()
            except ValueError as exc:
                raise SinaliteAuthError(
                    f"Sinalite auth returned non-JSON: {_truncate(text)}",
                    status=response.status_code,
                    path=self._config.auth_url,
                    body=text,
                ) from exc

            token = str(payload.get("access_token") or "").strip() if isinstance(payload, Mapping) else ""
            if not token:
                raise SinaliteAuthError(
                    "Sinalite auth missing access_token",
                    status=response.status_code,
                    path=self._config.auth_url,
                    body=text,
                )

            token_type = str(payload.get("token_type") or "Bearer").strip()
            bearer = as_bearer(token) if token_type.lower() == "bearer" else f"{token_type} {token}"
            ttl = clamp_token_ttl(payload.get("expires_in"), self._config.default_token_ttl_seconds)
            expires_at = self._tokens.store(bearer, ttl_seconds=ttl)
            logger.info("Refreshed Sinalite access token", expires_at=expires_at.isoformat(), ttl_seconds=ttl)
            return bearer

    def _url(self, path: str) -> str:
        return f"{self._config.base_url}/{path.lstrip('/')}"

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        not_found_ok: bool = False,
    ) -> Any:
        token = await self.get_access_token()
        headers = {"authorization": token, "accept": "application/json"}
        kwargs: dict[str, Any] = {"headers": headers}
        if body is not None:
            kwargs["json"] = body

        response = await self.fetch_with_retry(method, self._url(path), **kwargs)
        text = response.text
        if response.status_code == 404 and not_found_ok:
            return None
        if response.status_code == 401:
            self._tokens.invalidate()
        if response.status_code >= 400:
            raise SinaliteApiError(
                f"Sinalite {method} {path} failed ({response.status_code}): {_truncate(text)}",
                status=response.status_code,
                path=path,
                body=text,
            )
        if not text:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise SinaliteApiError(
                f"Sinalite returned non-JSON @ {path}: {_truncate(text, 200)}",
                status=502,
                path=path,
                body=text,
            ) from exc

    async def get_product_options(self, product_id: int, store_code: Any) -> ProductOptionsPayload:
        """Fetch ``GET /product/{id}/{storeCode}`` and split its three arrays."""

        pid = _require_product_id(product_id)
        code = normalize_store_code(store_code)
        payload = await self._request_json("GET", f"product/{pid}/{code}", not_found_ok=True)
        if not payload or not isinstance(payload, Sequence):
            return ProductOptionsPayload(raw=payload)

        def _section(index: int) -> list[Any]:
            if len(payload) > index and isinstance(payload[index], list):
                return payload[index]
            return []

        pricing_rows = [
            {"hash": str(row.get("hash") or ""), "value": str(row.get("value") or "")}
            for row in _section(1)
            if isinstance(row, Mapping) and row.get("hash")
        ]
        return ProductOptionsPayload(
            product_options=parse_product_options(_section(0)),
            pricing_rows=pricing_rows,
            metadata_rows=_section(2),
            raw=payload,
        )

    async def price_product(self, product_id: int, store_code: Any, option_ids: Sequence[int]) -> PriceQuote:
        """Price an option chain via ``POST /price/{id}/{storeId}``; returns the job total."""

        pid = _require_product_id(product_id)
        chain = [int(option_id) for option_id in option_ids if int(option_id) > 0]
        if not chain:
            raise ValueError("option_ids is empty")

        payload = await self._request_json(
            "POST",
            f"price/{pid}/{store_id_for(store_code)}",
            body={"productOptions": chain},
        )
        data = payload if isinstance(payload, Mapping) else {}
        price = data.get("price")
        return PriceQuote(
            price=str(price) if price is not None else None,
            package_info=data.get("packageInfo"),
            product_options=data.get("productOptions"),
            raw=payload,
        )


def _require_product_id(product_id: Any) -> int:
    try:
        pid = int(product_id)
    except (TypeError, ValueError) as exc:
        raise ValueError("product_id must be a positive number") from exc
    if pid <= 0:
        raise ValueError("product_id must be a positive number")
    return pid


def build_default_sinalite_client() -> SinaliteClient:
    """Construct a client wired from application settings."""

    return SinaliteClient(SinaliteConfig.from_settings())


__all__ = [
    "PriceQuote",
    "ProductOptionsPayload",
    "SinaliteApiError",
    "SinaliteAuthError",
    "SinaliteClient",
    "SinaliteConfig",
    "TokenCache",
    "as_bearer",
    "build_default_sinalite_client",
    "clamp_token_ttl",
]
