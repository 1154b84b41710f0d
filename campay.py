"""
Client for the CamPay mobile-money collection API.

A fresh access token is requested for every operation; nothing about the
gateway session is kept between calls.
"""
import os
import logging
from typing import Any, Dict, Optional

import httpx
from jose import JWTError, jwt

from errors import GatewayError

logger = logging.getLogger(__name__)

CAMPAY_USERNAME = os.getenv("CAMPAY_USERNAME", "")
CAMPAY_PASSWORD = os.getenv("CAMPAY_PASSWORD", "")
CAMPAY_ENVIRONMENT = os.getenv("CAMPAY_ENVIRONMENT", "DEV").upper()
CAMPAY_BASE_URL = os.getenv("CAMPAY_BASE_URL") or (
    "https://www.campay.net/api" if CAMPAY_ENVIRONMENT == "PROD" else "https://demo.campay.net/api"
)
CAMPAY_CURRENCY = os.getenv("CAMPAY_CURRENCY", "XAF")
CAMPAY_TIMEOUT = float(os.getenv("CAMPAY_TIMEOUT", "30"))
CAMPAY_WEBHOOK_KEY = os.getenv("CAMPAY_WEBHOOK_KEY")


def _upstream_message(response: httpx.Response, fallback: str) -> Any:
    try:
        data = response.json()
    except ValueError:
        return fallback, response.text[:200]
    if isinstance(data, dict):
        return data.get("message") or data.get("detail") or fallback, data
    return fallback, data


class CamPayClient:
    def __init__(self, base_url: str = CAMPAY_BASE_URL, username: str = CAMPAY_USERNAME,
                 password: str = CAMPAY_PASSWORD, timeout: float = CAMPAY_TIMEOUT,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url
        self.username = username
        self.password = password
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    def _get_token(self, client: httpx.Client) -> str:
        try:
            response = client.post("/token/", json={"username": self.username, "password": self.password})
            response.raise_for_status()
            token = response.json().get("token")
        except (httpx.HTTPError, ValueError) as e:
            logger.error("CamPay token error: %s", e)
            raise GatewayError("Failed to get payment gateway access token")
        if not token:
            raise GatewayError("Failed to get payment gateway access token")
        return token

    def _send(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self._client() as client:
            token = self._get_token(client)
            try:
                response = client.request(method, path, json=payload,
                                          headers={"Authorization": f"Token {token}"})
            except httpx.RequestError as e:
                logger.error("CamPay %s %s failed: %s", method, path, e)
                raise GatewayError("Payment gateway unreachable")
        if response.is_error:
            message, details = _upstream_message(response, "Payment failed")
            logger.error("CamPay API error %s: %s", response.status_code, details)
            raise GatewayError(message, details=details)
        try:
            return response.json()
        except ValueError:
            raise GatewayError("Invalid response from payment gateway")

    def collect(self, amount: str, currency: str, from_phone: str, description: str,
                external_reference: str) -> Dict[str, Any]:
        payload = {
            "amount": amount,
            "currency": currency,
            "from": from_phone,
            "description": description,
            "external_reference": external_reference,
        }
        logger.info("CamPay collect %s %s from %s (%s)", amount, currency, from_phone, external_reference)
        return self._send("POST", "/collect/", payload)

    def transaction_status(self, reference: str) -> Dict[str, Any]:
        return self._send("GET", f"/transaction/{reference}/")


def verify_webhook_signature(signature: Optional[str], key: Optional[str] = None) -> bool:
    """CamPay signs webhooks with an HS256 JWT; without a configured key every call is accepted."""
    key = CAMPAY_WEBHOOK_KEY if key is None else key
    if not key:
        return True
    if not signature:
        return False
    try:
        jwt.decode(signature, key, algorithms=["HS256"])
    except JWTError:
        return False
    return True
