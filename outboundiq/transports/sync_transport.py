"""
Blocking transport that posts metrics with requests.

Use where no process can outlive the request (AWS Lambda, other serverless
runtimes).
"""
import logging

import requests
from retrying import retry

from .. import config
from .base import Batch, DeliveryOutcome, Transport

logger = logging.getLogger(__name__)


def retry_if_connection_error(exception):
    """Return True if we should retry (in this case when it's a connection error)"""
    return isinstance(exception, (requests.ConnectionError, requests.Timeout))


class SyncTransport(Transport):
    """Sends each batch inline and waits for the collector to answer."""

    name = 'sync'

    def send(self, batch: Batch) -> DeliveryOutcome:
        return self.send_encoded(self.encode(batch))

    def send_encoded(self, data: str) -> DeliveryOutcome:
        """
        Post an encoded payload to the collector.

        Connection errors and timeouts are retried up to the configured
        retry count; HTTP errors are not. No retry starts once the configured
        timeout has elapsed, and a single attempt (connect plus read) fits
        within that timeout.

        Args:
            data (str): Encoded batch

        Returns:
            DeliveryOutcome: DELIVERED on a 2xx answer, FAILED otherwise
        """
        connect_timeout = self.config.connect_timeout()

        @retry(
            retry_on_exception=retry_if_connection_error,
            stop_max_attempt_number=self.config.retry_attempts + 1,
            stop_max_delay=int(self.config.timeout * 1000),
            wait_fixed=config.RETRY_DELAY * 1000  # milliseconds
        )
        def _send_request():
            return requests.post(
                self.config.endpoint,
                data=data,
                headers=self.config.headers(),
                timeout=(connect_timeout, self.config.timeout - connect_timeout),
                verify=True
            )

        try:
            response = _send_request()
        except requests.exceptions.RequestException as e:
            logger.error(
                "Failed to send metrics after %d retries: %s",
                self.config.retry_attempts, str(e)
            )
            return DeliveryOutcome.FAILED

        if not 200 <= response.status_code < 300:
            logger.warning(
                "Collector rejected metrics: %d - %s",
                response.status_code,
                response.text[:200]
            )
            return DeliveryOutcome.FAILED

        logger.debug("Metrics delivered (%d)", response.status_code)
        return DeliveryOutcome.DELIVERED
