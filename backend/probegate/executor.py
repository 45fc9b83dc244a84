# probegate/executor.py
"""
External probe executor.

Runs one tool adapter under a hard deadline and turns its outcome into a
ProbeResult. Adapters reach the outside world only through the helpers on
this class:

    run_command()     OS binary via create_subprocess_exec (never a shell),
                      killed and reaped when its deadline passes
    fetch()           user-supplied URL; redirects are followed by hand and
                      every hop goes back through the SSRF policy
    api_request()     fixed, allow-listed third-party API
    resolve()         DNS query through dnspython's async resolver
    connect()         raw TCP connection (SMTP banner checks)
    gather_isolated() fan-out where one failing sub-probe never fails the rest

Typed failures (UpstreamTimeout / UpstreamFailure / validation errors raised
mid-probe) become failed ProbeResults. Anything else propagates to the
gateway, which logs it and answers with a generic 500.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import logging
import os
import ssl
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import urljoin, urlsplit

import dns.asyncresolver
import dns.exception
import dns.resolver
import httpx

from probegate.config import GatewaySettings
from probegate.errors import GatewayError, UpstreamFailure, UpstreamTimeout, ValidationError
from probegate.models import NormalizedTarget, ProbeResult, ToolDescriptor
from probegate.security.validation import HostInputValidator

logger = logging.getLogger(__name__)

USER_AGENT = "probegate/2.0"
MAX_COMMAND_OUTPUT = 1024 * 1024
DEFAULT_MAX_BODY = 5 * 1024 * 1024
REDIRECT_STATUSES = (301, 302, 303, 307, 308)

DNS_NAMESERVERS = ["8.8.8.8", "1.1.1.1"]
DNS_TIMEOUT = 5
DNS_LIFETIME = 8

# Upstreams the gateway may call on its own behalf
ALLOWED_API_HOSTS = frozenset({
    "ipinfo.io",
    "ip-api.com",
    "api.macvendors.com",
    "api.pwnedpasswords.com",
    "www.virustotal.com",
})


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class CommandOutput:
    argv: List[str]
    output: str
    returncode: int
    duration_seconds: float


@dataclass
class FetchResult:
    url: str
    final_url: str
    status_code: int
    reason: str
    headers: Dict[str, str]
    text: str
    elapsed_ms: int
    truncated: bool = False
    hops: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def redirected(self) -> bool:
        return self.final_url != self.url


@dataclass
class ApiResponse:
    status_code: int
    data: Any


@dataclass
class ProbeContext:
    """Everything an adapter may use. Adapters never see the raw request."""
    descriptor: ToolDescriptor
    target: NormalizedTarget
    params: Mapping[str, str]
    executor: "ExternalProbeExecutor"
    settings: GatewaySettings


Adapter = Callable[[ProbeContext], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Helpers usable without an executor instance
# ---------------------------------------------------------------------------

async def gather_isolated(tasks: Mapping[str, Awaitable[Any]], default: Any = None) -> Dict[str, Any]:
    """
    Run sub-probes concurrently. A sub-probe that raises (or times out)
    contributes a copy of `default` instead of failing the whole gather.
    """
    keys = list(tasks)
    results = await asyncio.gather(*tasks.values(), return_exceptions=True)
    gathered: Dict[str, Any] = {}
    for key, outcome in zip(keys, results):
        if isinstance(outcome, BaseException):
            logger.debug("Sub-probe %s failed: %s: %s", key, type(outcome).__name__, outcome)
            gathered[key] = copy.deepcopy(default)
        else:
            gathered[key] = outcome
    return gathered


def parse_safely(parser: Callable[..., Dict[str, Any]], raw: str, what: str, *args) -> Dict[str, Any]:
    """Run a tool-output parser; on failure return the raw text with a marker."""
    try:
        return parser(raw, *args)
    except Exception as e:
        logger.warning("Could not parse %s output: %s: %s", what, type(e).__name__, e)
        return {"raw": raw, "parseError": f"could not parse {what} output"}


def _is_certificate_error(exc: BaseException) -> bool:
    """True when an httpx connect error wraps a failed certificate check."""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, ssl.SSLCertVerificationError):
            return True
        if "CERTIFICATE_VERIFY_FAILED" in str(current):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


def _default_resolver() -> dns.asyncresolver.Resolver:
    r = dns.asyncresolver.Resolver(configure=False)
    r.nameservers = list(DNS_NAMESERVERS)
    r.timeout = DNS_TIMEOUT
    r.lifetime = DNS_LIFETIME
    return r


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class ExternalProbeExecutor:
    """
    Bounded invocation of OS tools and outbound HTTP for one tool adapter.

    Args:
        validator:     Used to re-check every redirect hop of user URL fetches
        settings:      Gateway settings (API credentials)
        transport:     Optional httpx transport, injectable for tests
        dns_resolver:  Optional factory for a dnspython async resolver
        api_hosts:     Allow-list for api_request()
    """

    def __init__(
        self,
        validator: HostInputValidator,
        settings: Optional[GatewaySettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        dns_resolver: Optional[Callable[[], Any]] = None,
        api_hosts: Iterable[str] = ALLOWED_API_HOSTS,
    ):
        self.validator = validator
        self.settings = settings or GatewaySettings()
        self._transport = transport
        self._resolver_factory = dns_resolver or _default_resolver
        self.api_hosts = frozenset(api_hosts)

    # ═══════════════════════════════════════════════════════════
    # ENTRY POINT
    # ═══════════════════════════════════════════════════════════

    def execute(
        self,
        descriptor: ToolDescriptor,
        target: NormalizedTarget,
        params: Mapping[str, str],
        timeout: Optional[float] = None,
    ) -> ProbeResult:
        """
        Run the adapter for `descriptor` on a private event loop.

        The overall deadline cancels the adapter; any child process it
        started is killed as part of that cancellation.
        """
        from probegate.tools.registry import get_adapter

        adapter = get_adapter(descriptor.name)
        deadline = timeout or descriptor.timeout
        ctx = ProbeContext(
            descriptor=descriptor,
            target=target,
            params=dict(params),
            executor=self,
            settings=self.settings,
        )

        start = time.monotonic()
        loop = asyncio.new_event_loop()
        try:
            payload = loop.run_until_complete(asyncio.wait_for(adapter(ctx), deadline))
        except asyncio.TimeoutError:
            logger.info(
                "%s (%s) exceeded its %ss deadline",
                descriptor.name, descriptor.invocation_kind.value, deadline,
            )
            return ProbeResult.failed(
                descriptor.name, UpstreamTimeout.kind,
                f"{descriptor.failure_message}: timed out after {deadline:g}s",
            )
        except ValidationError as e:
            # raised mid-probe, e.g. a redirect hop into a blocked range
            return ProbeResult.failed(descriptor.name, e.kind, e.public_message)
        except GatewayError as e:
            logger.info("%s failed: %s", descriptor.name, e.message)
            return ProbeResult.failed(
                descriptor.name, e.kind, f"{descriptor.failure_message}: {e.public_message}",
            )
        finally:
            with contextlib.suppress(Exception):
                loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()

        logger.debug(
            "%s (%s) completed in %.2fs",
            descriptor.name, descriptor.invocation_kind.value, time.monotonic() - start,
        )
        return ProbeResult.ok(descriptor.name, payload)

    # ═══════════════════════════════════════════════════════════
    # OS COMMANDS
    # ═══════════════════════════════════════════════════════════

    async def run_command(self, argv: List[str], timeout: float) -> CommandOutput:
        """
        Spawn argv (no shell) with stdout+stderr combined.

        Every element of argv must already be a sanitized value. On deadline
        or cancellation the process is killed and reaped before returning.
        """
        binary = argv[0]
        env = {"PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"), "LC_ALL": "C"}
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
            )
        except FileNotFoundError:
            raise UpstreamFailure(f"{os.path.basename(binary)} is not available on this server")
        except PermissionError:
            raise UpstreamFailure(f"{os.path.basename(binary)} could not be started")

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            raise UpstreamTimeout(f"{os.path.basename(binary)} timed out after {timeout:g}s")
        finally:
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        output = (stdout or b"")[:MAX_COMMAND_OUTPUT].decode("utf-8", errors="replace")
        return CommandOutput(
            argv=list(argv),
            output=output,
            returncode=proc.returncode,
            duration_seconds=round(time.monotonic() - start, 3),
        )

    # ═══════════════════════════════════════════════════════════
    # HTTP: USER TARGETS
    # ═══════════════════════════════════════════════════════════

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        timeout: float = 10.0,
        follow_redirects: bool = True,
        max_redirects: int = 5,
        max_bytes: int = DEFAULT_MAX_BODY,
        headers: Optional[Dict[str, str]] = None,
        verify: bool = True,
    ) -> FetchResult:
        """
        Fetch a validated user URL.

        Redirects are followed manually so each Location is re-validated;
        a hop into a blocked range raises SsrfRejection. Certificates are
        verified unless the caller passes verify=False; a failed check raises
        UpstreamFailure("TLS certificate verification failed").
        """
        request_headers = {"User-Agent": USER_AGENT}
        if headers:
            request_headers.update(headers)

        hops: List[Dict[str, Any]] = []
        current = url
        start = time.monotonic()

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=False,
            verify=verify,
            transport=self._transport,
        ) as client:
            while True:
                status, reason, resp_headers, body, truncated = await self._single_request(
                    client, method, current, request_headers, max_bytes,
                )
                hops.append({
                    "url": current,
                    "statusCode": status,
                    "statusText": reason,
                    "server": resp_headers.get("server"),
                })
                location = resp_headers.get("location")
                if not (follow_redirects and status in REDIRECT_STATUSES and location):
                    break
                if len(hops) > max_redirects:
                    raise UpstreamFailure(f"Too many redirects (max {max_redirects})")
                current = self.validator.validate_url(urljoin(current, location), require_scheme=True).value

        return FetchResult(
            url=url,
            final_url=current,
            status_code=status,
            reason=reason,
            headers=resp_headers,
            text=body,
            elapsed_ms=int((time.monotonic() - start) * 1000),
            truncated=truncated,
            hops=hops,
        )

    async def _single_request(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        headers: Dict[str, str],
        max_bytes: int,
    ) -> Tuple[int, str, Dict[str, str], str, bool]:
        try:
            async with client.stream(method, url, headers=headers) as resp:
                chunks: List[bytes] = []
                size = 0
                truncated = False
                if method.upper() != "HEAD":
                    async for chunk in resp.aiter_bytes():
                        chunks.append(chunk)
                        size += len(chunk)
                        if size >= max_bytes:
                            truncated = True
                            break
                raw = b"".join(chunks)[:max_bytes]
                encoding = resp.encoding or "utf-8"
                text = raw.decode(encoding, errors="replace")
                resp_headers = {k.lower(): v for k, v in resp.headers.items()}
                return resp.status_code, resp.reason_phrase, resp_headers, text, truncated
        except httpx.TimeoutException:
            raise UpstreamTimeout("Request timed out")
        except httpx.ConnectError as e:
            if _is_certificate_error(e):
                raise UpstreamFailure("TLS certificate verification failed")
            raise UpstreamFailure("Host unreachable or DNS failed")
        except httpx.HTTPError as e:
            raise UpstreamFailure(f"Request failed: {type(e).__name__}")
        except LookupError:
            raise UpstreamFailure("Response used an unknown character encoding")

    # ═══════════════════════════════════════════════════════════
    # HTTP: ALLOW-LISTED APIS
    # ═══════════════════════════════════════════════════════════

    async def api_request(
        self,
        url: str,
        *,
        params: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 5.0,
        expect: str = "json",
        allow_status: Tuple[int, ...] = (),
    ) -> ApiResponse:
        """
        Call a fixed third-party API.

        Non-2xx (outside allow_status) → UpstreamFailure; timeout →
        UpstreamTimeout; refused connection → UpstreamFailure.
        """
        host = (urlsplit(url).hostname or "").lower()
        if host not in self.api_hosts:
            raise UpstreamFailure(f"Upstream {host or 'unknown'} is not allow-listed")

        request_headers = {"User-Agent": USER_AGENT}
        if headers:
            request_headers.update(headers)

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(timeout),
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                resp = await client.get(url, params=params, headers=request_headers)
        except httpx.TimeoutException:
            raise UpstreamTimeout(f"{host} did not respond in time")
        except httpx.ConnectError:
            raise UpstreamFailure(f"Could not connect to {host}")
        except httpx.HTTPError as e:
            raise UpstreamFailure(f"{host} request failed: {type(e).__name__}")

        if not (200 <= resp.status_code < 300) and resp.status_code not in allow_status:
            raise UpstreamFailure(f"{host} returned HTTP {resp.status_code}")

        if expect == "json":
            try:
                data = resp.json()
            except ValueError:
                raise UpstreamFailure(f"{host} returned malformed JSON")
        else:
            data = resp.text
        return ApiResponse(status_code=resp.status_code, data=data)

    # ═══════════════════════════════════════════════════════════
    # DNS / TCP
    # ═══════════════════════════════════════════════════════════

    async def resolve(self, name: str, rtype: str):
        """
        Query one record set. "Nothing found" (NXDOMAIN / no answer) is an
        empty list, not a failure.
        """
        resolver = self._resolver_factory()
        try:
            answer = await resolver.resolve(name, rtype)
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return []
        except dns.exception.Timeout:
            raise UpstreamTimeout(f"DNS query for {rtype} timed out")
        except dns.exception.DNSException as e:
            raise UpstreamFailure(f"DNS query for {rtype} failed: {type(e).__name__}")
        return list(answer)

    async def reverse(self, ip: str) -> List[str]:
        resolver = self._resolver_factory()
        try:
            answer = await resolver.resolve_address(ip)
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return []
        except dns.exception.Timeout:
            raise UpstreamTimeout("Reverse DNS query timed out")
        except dns.exception.DNSException as e:
            raise UpstreamFailure(f"Reverse DNS query failed: {type(e).__name__}")
        return [str(r).rstrip(".") for r in answer]

    async def connect(self, host: str, port: int, timeout: float):
        try:
            return await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
        except asyncio.TimeoutError:
            raise UpstreamTimeout(f"Connection to port {port} timed out")
        except OSError as e:
            raise UpstreamFailure(str(e) or "Connection failed")
