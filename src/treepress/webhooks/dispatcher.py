from __future__ import annotations

import asyncio
import enum
import hashlib
import hmac
import json
import logging
import socket
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence
from urllib.parse import urlsplit

import aiohttp
from aiohttp.abc import AbstractResolver

from treepress.auth.gatekeeper import SecretResolutionError, resolve_secret
from treepress.config.models import WebhookSettings
from treepress.webhooks.address import is_safe_ip

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Treepress-Signature"

HostResolver = Callable[[str, int], Awaitable[Sequence[tuple[int, str]]]]


class DeliveryOutcome(str, enum.Enum):
    DELIVERED = "delivered"
    INVALID_URL = "invalid_url"
    DNS_FAILED = "dns_failed"
    NO_SAFE_ADDRESS = "no_safe_address"
    SECRET_UNAVAILABLE = "secret_unavailable"
    REDIRECT_NOT_FOLLOWED = "redirect_not_followed"
    HTTP_ERROR = "http_error"
    TRANSPORT_ERROR = "transport_error"


@dataclass(frozen=True, slots=True)
class WebhookTarget:
    url: str
    # Raw configured value (literal or env reference); resolved per delivery.
    secret: Optional[str] = None


async def resolve_host(host: str, port: int) -> Sequence[tuple[int, str]]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [(family, sockaddr[0]) for family, _type, _proto, _canonname, sockaddr in infos]


class PinnedResolver(AbstractResolver):
    """Answers only for one host, always with the address validated before connecting."""

    def __init__(self, host: str, address: str, family: int) -> None:
        self._host = host
        self._address = address
        self._family = family

    async def resolve(self, host: str, port: int = 0, family: int = socket.AF_INET) -> list[dict[str, Any]]:
        if host != self._host:
            raise OSError(f"Refusing to resolve host outside the pinned target: {host}")
        return [
            {
                "hostname": host,
                "host": self._address,
                "port": port,
                "family": self._family,
                "proto": 0,
                "flags": socket.AI_NUMERICHOST,
            }
        ]

    async def close(self) -> None:
        return None


def sign_body(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _encode_payload(payload: Mapping[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")


class WebhookDispatcher:
    """
    Fire-and-forget delivery of content-update notifications.

    Each target is delivered by its own task; one target failing or timing out
    has no effect on the others or on the caller. Failed deliveries are logged
    and not retried.
    """

    def __init__(
        self,
        settings: WebhookSettings,
        *,
        host_resolver: HostResolver = resolve_host,
        is_safe: Callable[[str], bool] = is_safe_ip,
    ) -> None:
        self._settings = settings
        self._targets = tuple(
            WebhookTarget(url=t.url, secret=t.secret if t.secret is not None else settings.secret)
            for t in settings.targets
        )
        self._host_resolver = host_resolver
        self._is_safe = is_safe
        self._tasks: set[asyncio.Task] = set()

    @property
    def targets(self) -> tuple[WebhookTarget, ...]:
        return self._targets

    def fire(self, payload: Mapping[str, Any]) -> list[asyncio.Task]:
        """Schedule one delivery per target and return immediately."""
        body = _encode_payload(payload)
        tasks = []
        for target in self._targets:
            task = asyncio.create_task(self.deliver(target, body))
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)
            tasks.append(task)
        if tasks:
            logger.info("Webhook deliveries scheduled. targets=%d", len(tasks))
        return tasks

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        try:
            task.result()
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("Webhook delivery task failed unexpectedly.")

    async def drain(self, timeout_seconds: float) -> None:
        """Wait for in-flight deliveries, cancelling whatever is still running after the timeout."""
        pending = list(self._tasks)
        if not pending:
            return
        _done, still_running = await asyncio.wait(pending, timeout=timeout_seconds)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)

    def _pick_address(self, url: str, addresses: Sequence[tuple[int, str]]) -> Optional[tuple[int, str]]:
        for family, address in addresses:
            try:
                if self._is_safe(address):
                    return family, address
            except ValueError:
                continue
        logger.warning(
            "Webhook skipped, no resolved address is safe to contact. url=%s addresses=%s",
            url,
            [address for _family, address in addresses],
        )
        return None

    async def deliver(self, target: WebhookTarget, body: bytes) -> DeliveryOutcome:
        url = target.url
        parsed = urlsplit(url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            logger.warning("Webhook skipped, invalid URL. url=%s", url)
            return DeliveryOutcome.INVALID_URL
        try:
            port = parsed.port or (443 if parsed.scheme == "https" else 80)
        except ValueError:
            logger.warning("Webhook skipped, invalid port. url=%s", url)
            return DeliveryOutcome.INVALID_URL
        host = parsed.hostname

        headers = {"Content-Type": "application/json"}
        try:
            secret = resolve_secret(target.secret)
        except SecretResolutionError as e:
            logger.error("Webhook skipped, signing secret unavailable. url=%s error=%s", url, e)
            return DeliveryOutcome.SECRET_UNAVAILABLE
        if secret is not None:
            if not secret:
                logger.error("Webhook skipped, signing secret resolves to an empty string. url=%s", url)
                return DeliveryOutcome.SECRET_UNAVAILABLE
            headers[SIGNATURE_HEADER] = f"sha256={sign_body(secret, body)}"

        try:
            addresses = await self._host_resolver(host, port)
        except OSError as e:
            logger.warning("Webhook skipped, DNS resolution failed. url=%s error=%s", url, e)
            return DeliveryOutcome.DNS_FAILED
        picked = self._pick_address(url, addresses)
        if picked is None:
            return DeliveryOutcome.NO_SAFE_ADDRESS
        family, address = picked

        connector = aiohttp.TCPConnector(resolver=PinnedResolver(host, address, family), use_dns_cache=False)
        timeout = aiohttp.ClientTimeout(total=self._settings.timeout_seconds)
        try:
            async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
                async with session.post(url, data=body, headers=headers, allow_redirects=False) as response:
                    status = response.status
        except asyncio.TimeoutError:
            logger.warning(
                "Webhook delivery timed out. url=%s timeout_seconds=%s", url, self._settings.timeout_seconds
            )
            return DeliveryOutcome.TRANSPORT_ERROR
        except aiohttp.ClientError as e:
            logger.warning("Webhook delivery failed. url=%s address=%s error=%s", url, address, e)
            return DeliveryOutcome.TRANSPORT_ERROR

        if 300 <= status < 400:
            logger.warning("Webhook returned a redirect, not following. url=%s status=%d", url, status)
            return DeliveryOutcome.REDIRECT_NOT_FOLLOWED
        if status >= 400:
            logger.warning("Webhook returned an error status. url=%s status=%d", url, status)
            return DeliveryOutcome.HTTP_ERROR
        logger.info("Webhook delivered. url=%s status=%d", url, status)
        return DeliveryOutcome.DELIVERED
