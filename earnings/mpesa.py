#======================================================================================================
#
#   M-PESA DARAJA CLIENT (STK PUSH FOR ACTIVATION, B2C FOR WITHDRAWAL PAYOUTS)
#
#======================================================================================================
import base64
import time
from datetime import datetime
from typing import Dict, Optional
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from flask import current_app
from logger import payments_logger as logger
from earnings.exceptions import ProviderUnavailable, ValidationError

BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}


class MpesaClient:
    """Outbound calls to Safaricom Daraja."""

    def __init__(self, consumer_key, consumer_secret, shortcode, passkey, callback_url,
                 environment="sandbox", timeout=30, b2c_shortcode=None, b2c_initiator=None,
                 b2c_security_credential=None, b2c_result_url=None, b2c_timeout_url=None):
        self.base_url = BASE_URLS.get(environment, BASE_URLS["sandbox"])
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.callback_url = callback_url
        self.timeout = timeout
        self.b2c_shortcode = b2c_shortcode
        self.b2c_initiator = b2c_initiator
        self.b2c_security_credential = b2c_security_credential
        self.b2c_result_url = b2c_result_url
        self.b2c_timeout_url = b2c_timeout_url

        self._token = None
        self._token_expires_at = 0.0

        # Only the token GET is retried; payment POSTs are not idempotent
        self.session = requests.Session()
        retry_strategy = Retry(
            total=3,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=frozenset(["GET"]),
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    @classmethod
    def from_config(cls, config):
        return cls(
            consumer_key=config.get("MPESA_CONSUMER_KEY"),
            consumer_secret=config.get("MPESA_CONSUMER_SECRET"),
            shortcode=config.get("MPESA_SHORTCODE"),
            passkey=config.get("MPESA_PASSKEY"),
            callback_url=config.get("MPESA_CALLBACK_URL"),
            environment=config.get("MPESA_ENVIRONMENT", "sandbox"),
            timeout=config.get("MPESA_REQUEST_TIMEOUT_SECONDS", 30),
            b2c_shortcode=config.get("MPESA_B2C_SHORTCODE"),
            b2c_initiator=config.get("MPESA_B2C_INITIATOR"),
            b2c_security_credential=config.get("MPESA_B2C_SECURITY_CREDENTIAL"),
            b2c_result_url=config.get("MPESA_B2C_RESULT_URL"),
            b2c_timeout_url=config.get("MPESA_B2C_TIMEOUT_URL"),
        )

    # -------------------------------------------------------------------------
    # Auth
    # -------------------------------------------------------------------------
    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        if not self.consumer_key or not self.consumer_secret:
            logger.error("MPESA_CONSUMER_KEY / MPESA_CONSUMER_SECRET not configured")
            raise ProviderUnavailable()

        try:
            resp = self.session.get(
                f"{self.base_url}/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=(self.consumer_key, self.consumer_secret),
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"M-Pesa token request failed: {e}")
            raise ProviderUnavailable() from e

        self._token = data["access_token"]
        # Refresh a minute early
        self._token_expires_at = time.monotonic() + int(data.get("expires_in", 3599)) - 60
        return self._token

    def _post(self, path: str, payload: Dict) -> Dict:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }
        try:
            resp = self.session.post(f"{self.base_url}{path}", json=payload, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.HTTPError as e:
            body = e.response.text if e.response is not None else ""
            logger.error(f"M-Pesa HTTP error on {path}: {e} body={body}")
            raise ProviderUnavailable() from e
        except (requests.RequestException, ValueError) as e:
            logger.error(f"M-Pesa request to {path} failed: {e}")
            raise ProviderUnavailable() from e

        if str(data.get("ResponseCode")) != "0":
            logger.error(f"M-Pesa rejected {path}: {data}")
            raise ProviderUnavailable(
                data.get("ResponseDescription") or data.get("errorMessage") or None
            )
        return data

    # -------------------------------------------------------------------------
    # STK push
    # -------------------------------------------------------------------------
    def stk_password(self, timestamp: str) -> str:
        raw = f"{self.shortcode}{self.passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    def stk_push(self, amount: int, phone: str, account_reference: str,
                 description: str = "Account activation") -> Dict[str, str]:
        """Trigger the payment prompt. Returns checkout and merchant request ids."""
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": self.stk_password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": phone,
            "PartyB": self.shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }
        logger.info(f"STK push: amount={amount} phone={phone} ref={account_reference}")
        data = self._post("/mpesa/stkpush/v1/processrequest", payload)

        checkout_request_id = data.get("CheckoutRequestID")
        merchant_request_id = data.get("MerchantRequestID")
        if not checkout_request_id or not merchant_request_id:
            logger.error(f"STK push response missing request ids: {data}")
            raise ProviderUnavailable()
        return {
            "checkout_request_id": checkout_request_id,
            "merchant_request_id": merchant_request_id,
            "customer_message": data.get("CustomerMessage"),
        }

    # -------------------------------------------------------------------------
    # B2C payout
    # -------------------------------------------------------------------------
    def b2c_payment(self, amount: int, phone: str, remarks: str, occasion: str = "") -> Dict[str, str]:
        payload = {
            "InitiatorName": self.b2c_initiator,
            "SecurityCredential": self.b2c_security_credential,
            "CommandID": "BusinessPayment",
            "Amount": int(amount),
            "PartyA": self.b2c_shortcode,
            "PartyB": phone,
            "Remarks": remarks,
            "QueueTimeOutURL": self.b2c_timeout_url,
            "ResultURL": self.b2c_result_url,
            "Occasion": occasion,
        }
        logger.info(f"B2C payout: amount={amount} phone={phone} occasion={occasion}")
        data = self._post("/mpesa/b2c/v1/paymentrequest", payload)

        conversation_id = data.get("ConversationID")
        if not conversation_id:
            logger.error(f"B2C response missing ConversationID: {data}")
            raise ProviderUnavailable()
        return {
            "conversation_id": conversation_id,
            "originator_conversation_id": data.get("OriginatorConversationID"),
        }


def get_mpesa_client() -> MpesaClient:
    """One client per app, created lazily and kept in app.extensions."""
    client = current_app.extensions.get("mpesa")
    if client is None:
        client = MpesaClient.from_config(current_app.config)
        current_app.extensions["mpesa"] = client
    return client


# =========================================================================================
# INBOUND PAYLOAD PARSING
# =========================================================================================
def parse_stk_callback(payload: Optional[Dict]) -> Dict:
    """Flatten Body.stkCallback into the fields the reconciler needs."""
    try:
        callback = payload["Body"]["stkCallback"]
        checkout_request_id = callback["CheckoutRequestID"]
        result_code = int(callback["ResultCode"])
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError("Malformed STK callback payload") from e

    metadata = {}
    for item in (callback.get("CallbackMetadata") or {}).get("Item", []):
        if "Name" in item:
            metadata[item["Name"]] = item.get("Value")

    return {
        "checkout_request_id": checkout_request_id,
        "merchant_request_id": callback.get("MerchantRequestID"),
        "result_code": result_code,
        "result_desc": callback.get("ResultDesc"),
        "receipt_number": metadata.get("MpesaReceiptNumber"),
        "amount": metadata.get("Amount"),
        "phone": metadata.get("PhoneNumber"),
    }


def parse_b2c_result(payload: Optional[Dict]) -> Dict:
    try:
        result = payload["Result"]
        conversation_id = result["ConversationID"]
        result_code = int(result["ResultCode"])
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError("Malformed B2C result payload") from e

    parameters = {}
    for item in (result.get("ResultParameters") or {}).get("ResultParameter", []):
        if "Key" in item:
            parameters[item["Key"]] = item.get("Value")

    return {
        "conversation_id": conversation_id,
        "result_code": result_code,
        "result_desc": result.get("ResultDesc"),
        "transaction_receipt": parameters.get("TransactionReceipt") or result.get("TransactionID"),
    }
