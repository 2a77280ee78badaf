from __future__ import annotations

import asyncio
import ssl
import time
from datetime import datetime, timezone

import structlog
from cryptography import x509

from domain_probes.common_probe import (
    CONNECTION_FAILED,
    INVALID_CERTIFICATE,
    NO_CERTIFICATE,
    TIMEOUT,
    UNKNOWN,
    CheckType,
    ProbeResult,
    TlsDetails,
    describe_exception,
    elapsed_ms,
    normalize_domain_name,
)


logger = structlog.get_logger(__name__)


def _days_until_expiry(not_after: datetime, now: datetime) -> int | None:
    if not_after <= now:
        return None
    return int((not_after - now).total_seconds() // 86400)


def _subject_alternative_names(cert: x509.Certificate) -> list[str]:
    try:
        ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    except ValueError:
        # Malformed extension; keep the rest of the certificate info.
        return []
    return [str(n) for n in ext.value.get_values_for_type(x509.DNSName)]


def _describe_certificate(der: bytes, *, validation_error: str | None, now: datetime) -> TlsDetails:
    cert = x509.load_der_x509_certificate(der)
    not_before = cert.not_valid_before_utc
    not_after = cert.not_valid_after_utc
    days = _days_until_expiry(not_after, now)
    return TlsDetails(
        is_valid=validation_error is None and days is not None,
        issuer=cert.issuer.rfc4514_string(),
        subject=cert.subject.rfc4514_string(),
        not_before=not_before.isoformat(),
        not_after=not_after.isoformat(),
        days_until_expiry=days,
        subject_alternative_names=_subject_alternative_names(cert),
    )


async def _fetch_peer_certificate(
    host: str,
    port: int,
    *,
    verify: bool,
    timeout_seconds: float,
) -> bytes | None:
    ctx = ssl.create_default_context()
    if not verify:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE

    reader, writer = await asyncio.wait_for(
        asyncio.open_connection(host=host, port=port, ssl=ctx, server_hostname=host),
        timeout=max(0.5, float(timeout_seconds)),
    )
    try:
        sslobj = writer.get_extra_info("ssl_object")
        return sslobj.getpeercert(binary_form=True) if sslobj else None
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except Exception:
            pass


def _failure(started: float, code: str, message: str) -> ProbeResult:
    return ProbeResult(
        check_type=CheckType.TLS,
        success=False,
        duration_ms=elapsed_ms(started),
        details=TlsDetails(),
        error_code=code,
        error_message=message,
    )


async def run_tls_probe(
    target: str,
    *,
    port: int = 443,
    timeout_seconds: float = 10.0,
) -> ProbeResult:
    """
    Fetch and describe the certificate served on host:port.

    The handshake is first attempted with full verification. A verification
    failure is recorded and the certificate is fetched again without
    verification, so an expired or mismatched certificate is still reported.
    `success` means a certificate was obtained; `details.is_valid` carries the
    verdict on it.
    """
    host = normalize_domain_name(target)
    started = time.perf_counter()
    deadline = time.monotonic() + max(1.0, float(timeout_seconds))

    validation_error: str | None = None
    try:
        try:
            der = await _fetch_peer_certificate(
                host, port, verify=True, timeout_seconds=deadline - time.monotonic()
            )
        except ssl.SSLCertVerificationError as exc:
            validation_error = str(getattr(exc, "verify_message", None) or exc)
            der = await _fetch_peer_certificate(
                host, port, verify=False, timeout_seconds=deadline - time.monotonic()
            )
    except (asyncio.TimeoutError, TimeoutError):
        logger.warning("TLS handshake timed out", host=host, port=port)
        return _failure(started, TIMEOUT, "TLS connection timed out")
    except ssl.SSLError as exc:
        logger.warning("TLS handshake failed", host=host, port=port, error=describe_exception(exc))
        return _failure(started, UNKNOWN, describe_exception(exc))
    except OSError as exc:
        logger.warning("TLS connection failed", host=host, port=port, error=describe_exception(exc))
        return _failure(started, CONNECTION_FAILED, describe_exception(exc))
    except Exception as exc:
        logger.error("Error checking TLS certificate", host=host, port=port, error=describe_exception(exc))
        return _failure(started, UNKNOWN, describe_exception(exc))

    if not der:
        return _failure(started, NO_CERTIFICATE, "No certificate found")

    try:
        details = _describe_certificate(der, validation_error=validation_error, now=datetime.now(timezone.utc))
    except ValueError as exc:
        logger.warning("Could not parse peer certificate", host=host, port=port, error=describe_exception(exc))
        return _failure(started, UNKNOWN, f"Unparseable certificate: {describe_exception(exc)}")

    error_code = None
    error_message = None
    if not details.is_valid:
        error_code = INVALID_CERTIFICATE
        error_message = validation_error or f"Certificate expired on {details.not_after}"

    return ProbeResult(
        check_type=CheckType.TLS,
        success=True,
        duration_ms=elapsed_ms(started),
        details=details,
        error_code=error_code,
        error_message=error_message,
    )
