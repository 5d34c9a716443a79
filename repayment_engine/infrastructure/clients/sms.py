"""SMS provider HTTP client (tenant-configured bulk SMS gateway)"""

import httpx
from repayment_engine.domain.exceptions import SmsDeliveryError
from repayment_engine.config import settings
from repayment_engine.infrastructure.database.models import TenantSmsSettings
from repayment_engine.infrastructure.observability.metrics import (
    sms_failure_counter,
    sms_latency_histogram,
    sms_sent_counter,
)


class SmsClient:
    """Client for the tenant's SMS gateway; one GET request per message"""

    def __init__(self, http_client: httpx.Client | None = None, timeout: float | None = None):
        self.timeout = timeout or settings.sms_timeout_seconds
        self.http_client = http_client or httpx.Client(timeout=self.timeout)

    def send(self, config: TenantSmsSettings, mobile: str, message: str) -> None:
        """
        Send one message through the tenant's gateway.

        Raises:
            SmsDeliveryError: On timeout, network failure or non-2xx response
        """
        params = {
            "apikey": config.api_key,
            "partnerID": config.partner_id,
            "message": message.strip(),
            "shortcode": config.shortcode,
            "mobile": mobile,
        }
        try:
            with sms_latency_histogram.time():
                response = self.http_client.get(config.base_url, params=params, timeout=self.timeout)
                response.raise_for_status()
        except httpx.TimeoutException as e:
            sms_failure_counter.inc()
            raise SmsDeliveryError(f"SMS provider timeout after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            sms_failure_counter.inc()
            raise SmsDeliveryError(f"SMS send failed ({e.response.status_code})") from e
        except httpx.RequestError as e:
            sms_failure_counter.inc()
            raise SmsDeliveryError(f"SMS provider unreachable: {e}") from e

        sms_sent_counter.inc()

    def close(self) -> None:
        self.http_client.close()
