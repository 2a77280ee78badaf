from __future__ import annotations

import asyncio
import time

import dns.exception
import dns.resolver
import structlog

from domain_probes.common_probe import (
    NXDOMAIN,
    TIMEOUT,
    UNKNOWN,
    CheckType,
    DnsDetails,
    DnsRecord,
    ProbeResult,
    describe_exception,
    elapsed_ms,
    normalize_domain_name,
)


logger = structlog.get_logger(__name__)

RECORD_TYPES = ("A", "AAAA", "CNAME")


def _dns_query_sync(
    *,
    domain: str,
    record_type: str,
    resolvers: list[str] | None,
    timeout_seconds: float,
) -> list[DnsRecord]:
    r = dns.resolver.Resolver(configure=True)
    if resolvers:
        r.nameservers = list(resolvers)
    r.timeout = max(0.5, float(timeout_seconds))
    r.lifetime = max(0.5, float(timeout_seconds))
    try:
        ans = r.resolve(domain, record_type)
    except dns.resolver.NoAnswer:
        # "NoAnswer" is a normal outcome (e.g. no AAAA record); treat it as empty.
        return []
    ttl = int(ans.rrset.ttl) if ans.rrset is not None else None
    out: list[DnsRecord] = []
    for rr in ans:
        value = str(rr or "").strip().rstrip(".")
        if value:
            out.append(DnsRecord(type=record_type, value=value, ttl=ttl))
    return out


def _classify_dns_error(exc: BaseException) -> str:
    if isinstance(exc, dns.resolver.NXDOMAIN):
        return NXDOMAIN
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, dns.exception.Timeout)):
        return TIMEOUT
    if isinstance(exc, dns.resolver.NoNameservers):
        return "SERVFAIL"
    if isinstance(exc, dns.resolver.NoResolverConfiguration):
        return "NO_NAMESERVERS"
    return UNKNOWN


async def _query(
    domain: str,
    record_type: str,
    *,
    resolvers: list[str] | None,
    deadline: float,
) -> list[DnsRecord]:
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise asyncio.TimeoutError(f"{record_type} query skipped: probe deadline reached")
    return await asyncio.wait_for(
        asyncio.to_thread(
            _dns_query_sync,
            domain=domain,
            record_type=record_type,
            resolvers=resolvers,
            timeout_seconds=remaining,
        ),
        timeout=remaining,
    )


async def run_dns_probe(
    target: str,
    *,
    timeout_seconds: float = 5.0,
    resolvers: list[str] | None = None,
) -> ProbeResult:
    """
    Resolve A, AAAA and CNAME records for `target`.

    An A query error fails the probe with the resolver's error code; AAAA and
    CNAME errors only drop those record types. Success requires at least one
    record of any type.
    """
    domain = normalize_domain_name(target)
    started = time.perf_counter()
    deadline = time.monotonic() + max(0.5, float(timeout_seconds))

    if not domain:
        return ProbeResult(
            check_type=CheckType.DNS,
            success=False,
            duration_ms=elapsed_ms(started),
            details=DnsDetails(),
            error_code=UNKNOWN,
            error_message="Empty domain name",
        )

    records: list[DnsRecord] = []
    try:
        records.extend(await _query(domain, "A", resolvers=resolvers, deadline=deadline))
    except Exception as exc:
        code = _classify_dns_error(exc)
        logger.warning("DNS resolution failed", domain=domain, error_code=code, error=describe_exception(exc))
        return ProbeResult(
            check_type=CheckType.DNS,
            success=False,
            duration_ms=elapsed_ms(started),
            details=DnsDetails(),
            error_code=code,
            error_message=f"DNS query failed: {describe_exception(exc)}",
        )

    for record_type in RECORD_TYPES[1:]:
        try:
            records.extend(await _query(domain, record_type, resolvers=resolvers, deadline=deadline))
        except Exception as exc:
            logger.debug(
                "Optional DNS query failed",
                domain=domain,
                record_type=record_type,
                error=describe_exception(exc),
            )

    ips = [r.value for r in records if r.type in ("A", "AAAA")]
    details = DnsDetails(ip_addresses=ips, records=records)
    if not records:
        return ProbeResult(
            check_type=CheckType.DNS,
            success=False,
            duration_ms=elapsed_ms(started),
            details=details,
            error_code=NXDOMAIN,
            error_message="No DNS records found",
        )

    return ProbeResult(
        check_type=CheckType.DNS,
        success=True,
        duration_ms=elapsed_ms(started),
        details=details,
    )
