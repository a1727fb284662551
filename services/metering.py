"""
Metered-billing reporters for Max Mode overage.

Local counters in the billing table are the source of truth. Stripe Billing
Meter events are a best-effort downstream mirror: a failed report is logged
and swallowed, never surfaced to the user and never rolled back locally.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Protocol

import stripe

logger = logging.getLogger(__name__)

DEFAULT_METER_QUANTITY = "1"


class MeterReporter(Protocol):
    """Reports one usage event to the metered-billing provider."""

    def report_usage_event(self, event_name: str, customer_id: str, quantity: str = DEFAULT_METER_QUANTITY) -> None:
        ...


class NoopMeterReporter:
    """Reporter used when Stripe is not configured."""

    def report_usage_event(self, event_name: str, customer_id: str, quantity: str = DEFAULT_METER_QUANTITY) -> None:
        logger.debug(f"Meter reporting disabled, dropping event_name={event_name} customer_id={customer_id}")


class StripeMeterReporter:
    """
    Sends meter events through the Stripe Billing Meter Events API.

    The HTTP client uses a short timeout and no automatic retries so a slow
    provider cannot hold a worker.
    """

    def __init__(self, api_key: str, timeout_seconds: float = 5.0, client: Optional["stripe.StripeClient"] = None):
        if client is None:
            client = stripe.StripeClient(
                api_key,
                http_client=stripe.RequestsClient(timeout=timeout_seconds),
                max_network_retries=0,
            )
        self._client = client

    def report_usage_event(self, event_name: str, customer_id: str, quantity: str = DEFAULT_METER_QUANTITY) -> None:
        self._client.billing.meter_events.create(
            params={
                "event_name": event_name,
                "payload": {
                    "stripe_customer_id": customer_id,
                    "value": quantity,
                },
            }
        )


class BackgroundMeterReporter:
    """
    Dispatches reports to a bounded thread pool so the response to the user
    never waits on the provider.

    At most max_pending events are queued or in flight. Further events are
    dropped and logged; the billing table counters still hold every unit.
    """

    def __init__(self, inner: MeterReporter, max_workers: int = 4, max_pending: int = 1000):
        self._inner = inner
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="meter-events")
        self._slots = threading.BoundedSemaphore(max_pending)

    def report_usage_event(self, event_name: str, customer_id: str, quantity: str = DEFAULT_METER_QUANTITY) -> None:
        if not self._slots.acquire(blocking=False):
            logger.error(f"METER_EVENT_FAILED: backlog full, dropping event_name={event_name} customer_id={customer_id}")
            return

        try:
            future = self._executor.submit(emit_meter_event, self._inner, event_name, customer_id, quantity)
        except RuntimeError as e:
            # Executor already shut down
            self._slots.release()
            logger.error(f"METER_EVENT_FAILED: reporter stopped, dropping event_name={event_name} customer_id={customer_id}: {str(e)}")
            return
        future.add_done_callback(lambda _: self._slots.release())

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def emit_meter_event(
    reporter: MeterReporter,
    event_name: str,
    customer_id: Optional[str],
    quantity: str = DEFAULT_METER_QUANTITY
) -> bool:
    """
    Report one meter event, swallowing provider failures.

    Args:
        reporter: Meter reporter
        event_name: Stripe meter event name (e.g. "max_mode_premium")
        customer_id: Stripe customer id
        quantity: Event value (always "1" for per-message overage)

    Returns:
        True if the reporter accepted the event, False otherwise
    """
    if not customer_id:
        logger.warning(f"METER_EVENT_SKIPPED: event_name={event_name} has no stripe_customer_id")
        return False

    try:
        reporter.report_usage_event(event_name, customer_id, quantity)
        return True
    except stripe.error.StripeError as e:
        logger.error(f"METER_EVENT_FAILED: Stripe rejected event_name={event_name} customer_id={customer_id}: {str(e)}", exc_info=True)
    except Exception as e:
        logger.error(f"METER_EVENT_FAILED: Unexpected error reporting event_name={event_name} customer_id={customer_id}: {str(e)}", exc_info=True)
    return False


def build_meter_reporter(settings) -> MeterReporter:
    """
    Build the reporter for this process from settings.

    Returns a NoopMeterReporter when STRIPE_SECRET_KEY is not set.
    """
    if not settings.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY not set: Max Mode usage will be recorded locally only")
        return NoopMeterReporter()

    reporter = StripeMeterReporter(settings.stripe_secret_key, timeout_seconds=settings.meter_timeout_seconds)
    if settings.meter_async:
        return BackgroundMeterReporter(
            reporter,
            max_workers=settings.meter_workers,
            max_pending=settings.meter_max_pending,
        )
    return reporter
