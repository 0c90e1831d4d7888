import logging

import requests

from payment_service.errors import GatewayRejectedError, TransientGatewayError

logger = logging.getLogger(__name__)


def _body(response: requests.Response):
    try:
        return response.json()
    except ValueError:
        return response.text


def send(session: requests.Session, method: str, url: str, *, timeout: float,
         **kwargs) -> requests.Response:
    """Issue one HTTP call and classify its failure for the retry policy."""
    try:
        response = session.request(method, url, timeout=timeout, **kwargs)
    except (requests.Timeout, requests.ConnectionError) as exc:
        raise TransientGatewayError(f"{method} {url} failed: {exc}") from exc

    status = response.status_code
    if status == 429 or status >= 500:
        payload = _body(response)
        logger.warning("Gateway %s %s returned %s: %s", method, url, status, payload)
        raise TransientGatewayError(f"{method} {url} returned {status}", status, payload)
    if status >= 400:
        payload = _body(response)
        logger.error("Gateway %s %s rejected with %s: %s", method, url, status, payload)
        raise GatewayRejectedError(f"{method} {url} returned {status}", status, payload)
    return response


def json_body(response: requests.Response):
    """Decoded JSON of a successful response; a body that is not JSON is a gateway fault."""
    try:
        return response.json()
    except ValueError as exc:
        raise GatewayRejectedError(
            f"Gateway returned a non-JSON body ({response.status_code})",
            response.status_code, response.text,
        ) from exc
