"""Alipay adapter: builds payable artifacts and checks notification signatures.

Signing and signature verification are done by the vendor SDK; this module
only decides which SDK call to make and translates its failures.
"""
import logging
from decimal import Decimal
from typing import Mapping, Optional
from urllib.parse import parse_qsl

from alipay import AliPay
from jinja2 import Environment

from .config import Settings
from .errors import GatewayError

logger = logging.getLogger("portal.payments")

SUCCESS_CODE = "10000"

_env = Environment(autoescape=True)
REDIRECT_FORM = _env.from_string(
    '<form id="alipaysubmit" name="alipaysubmit" action="{{ action }}" method="POST">'
    "{% for name, value in fields %}"
    '<input type="hidden" name="{{ name }}" value="{{ value }}"/>'
    "{% endfor %}"
    '<input type="submit" value="ok" style="display:none;"></form>'
    "<script>document.forms['alipaysubmit'].submit();</script>"
)


def format_amount(amount: Decimal) -> str:
    return f"{Decimal(amount):.2f}"


class AlipayGateway:
    def __init__(
        self,
        client: AliPay,
        gateway_url: str,
        notify_url: Optional[str] = None,
        return_url: Optional[str] = None,
    ):
        self._client = client
        self.gateway_url = gateway_url
        self.notify_url = notify_url
        # set: checkout goes through the page-pay form unless the caller says otherwise
        self.return_url = return_url

    @classmethod
    def from_settings(cls, settings: Settings) -> "AlipayGateway":
        if not (settings.alipay_app_id and settings.alipay_private_key and settings.alipay_public_key):
            raise GatewayError("Alipay credentials are not configured")
        client = AliPay(
            appid=settings.alipay_app_id,
            app_notify_url=settings.alipay_notify_url,
            app_private_key_string=settings.alipay_private_key,
            alipay_public_key_string=settings.alipay_public_key,
            sign_type=settings.alipay_sign_type,
            debug=settings.alipay_env == "sandbox",
        )
        return cls(client, settings.alipay_gateway, settings.alipay_notify_url, settings.alipay_return_url)

    def request_precreate_artifact(
        self, order_id: str, amount: Decimal, subject: str, notify_url: Optional[str] = None
    ) -> str:
        """Ask for a scan-to-pay QR code; returns its URL."""
        try:
            result = self._client.api_alipay_trade_precreate(
                subject=subject,
                out_trade_no=order_id,
                total_amount=format_amount(amount),
                notify_url=notify_url or self.notify_url,
            )
        except Exception as e:
            logger.error("precreate for order %s failed", order_id, exc_info=e)
            raise GatewayError("payment gateway request failed") from e
        qr_code = (result or {}).get("qr_code")
        if (result or {}).get("code") != SUCCESS_CODE or not qr_code:
            logger.error(
                "precreate for order %s rejected: code=%s sub_code=%s",
                order_id,
                (result or {}).get("code"),
                (result or {}).get("sub_code"),
            )
            raise GatewayError("payment gateway rejected the order")
        return qr_code

    def request_redirect_form(
        self,
        order_id: str,
        amount: Decimal,
        subject: str,
        return_url: Optional[str] = None,
        notify_url: Optional[str] = None,
    ) -> str:
        """Build the auto-submitting page-pay form the browser posts to Alipay."""
        try:
            order_string = self._client.api_alipay_trade_page_pay(
                subject=subject,
                out_trade_no=order_id,
                total_amount=format_amount(amount),
                return_url=return_url or self.return_url,
                notify_url=notify_url or self.notify_url,
            )
        except Exception as e:
            logger.error("page pay for order %s failed", order_id, exc_info=e)
            raise GatewayError("payment gateway request failed") from e
        fields = parse_qsl(order_string, keep_blank_values=True)
        return REDIRECT_FORM.render(action=f"{self.gateway_url}?charset=utf-8", fields=fields)

    def verify_callback_signature(self, payload: Mapping[str, str]) -> bool:
        data = dict(payload)
        signature = data.pop("sign", None)
        if not signature:
            return False
        try:
            return bool(self._client.verify(data, signature))
        except Exception as e:
            # unknown sign_type, malformed signature and the like
            logger.warning("signature check raised: %s", e)
            return False
