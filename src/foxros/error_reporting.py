"""Sentry error reporting for foxros.

Provides init_error_reporting() for opt-in crash/error reporting and
report_exception() used by the session for transport failures. Events are
scrubbed of sensitive keys and of endpoint credentials before send.
"""

import logging
import os
import re

logger = logging.getLogger(__name__)

_SCRUB_KEY_KEYWORDS: tuple[str, ...] = ("password", "token", "secret", "credential", "key", "auth")
_SCRUB_MSG_KEYWORDS: tuple[str, ...] = ("password", "token", "secret", "credential")
# ws://user:pass@host → ws://[REDACTED]@host
_URL_USERINFO = re.compile(r"(wss?://)[^/@\s]+@")


def init_error_reporting(
    dsn: str | None = None,
    environment: str = "production",
    enabled: bool = True,
) -> bool:
    """Initialize Sentry error reporting.

    Opt-in: enabled only when a DSN is given here or through the
    ``FOXROS_SENTRY_DSN`` / ``SENTRY_DSN`` environment variables. Setting
    ``FOXROS_SENTRY_DSN=""`` disables reporting even if ``SENTRY_DSN`` is set.

    Args:
        dsn: Sentry DSN; overrides the environment.
        environment: Environment tag (production/development/testing).
        enabled: Master switch. If False, no SDK initialization occurs.

    Returns:
        True if the SDK was initialized.
    """
    if not enabled:
        return False

    env_dsn = os.environ.get("FOXROS_SENTRY_DSN")
    if env_dsn is not None and env_dsn == "" and dsn is None:
        return False

    dsn = dsn or env_dsn or os.environ.get("SENTRY_DSN")
    if not dsn:
        return False

    try:
        import sentry_sdk  # noqa: PLC0415

        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            traces_sample_rate=0.0,
            send_default_pii=False,
            before_send=_scrub_event,  # type: ignore[arg-type, unused-ignore]
        )
    except ImportError:
        logger.debug("sentry-sdk not installed; error reporting disabled")
        return False
    except Exception as exc:  # noqa: BLE001
        logger.warning("Failed to initialize error reporting: %s", exc)
        return False
    logger.debug("Error reporting initialized (dsn=%s...)", dsn[:30])
    return True


def _scrub_text(text: str) -> str:
    if any(s in text.lower() for s in _SCRUB_MSG_KEYWORDS):
        return "[REDACTED]"
    return _URL_USERINFO.sub(r"\1[REDACTED]@", text)


def _scrub_event(event: dict, hint: dict) -> dict:  # type: ignore[type-arg]
    """Remove sensitive data before sending."""
    if "extra" in event:
        for key in list(event["extra"]):
            if any(s in key.lower() for s in _SCRUB_KEY_KEYWORDS):
                event["extra"][key] = "[REDACTED]"
            elif isinstance(event["extra"][key], str):
                event["extra"][key] = _URL_USERINFO.sub(r"\1[REDACTED]@", event["extra"][key])

    if "breadcrumbs" in event and "values" in event["breadcrumbs"]:
        for breadcrumb in event["breadcrumbs"]["values"]:
            if "message" in breadcrumb:
                breadcrumb["message"] = _scrub_text(str(breadcrumb["message"]))
            if "data" in breadcrumb and isinstance(breadcrumb["data"], dict):
                for key in list(breadcrumb["data"]):
                    if any(s in key.lower() for s in _SCRUB_KEY_KEYWORDS):
                        breadcrumb["data"][key] = "[REDACTED]"

    return event


def report_exception(exc: BaseException) -> bool:
    """Send *exc* to Sentry if reporting is initialized.

    Returns:
        True if the event was captured.
    """
    try:
        import sentry_sdk  # noqa: PLC0415
    except ImportError:
        return False

    if not sentry_sdk.is_initialized():
        return False
    sentry_sdk.capture_exception(exc)
    logger.debug("Reported %s to Sentry", type(exc).__name__)
    return True
