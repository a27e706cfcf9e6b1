"""Message templates for gift card delivery."""

from __future__ import annotations

import html
from dataclasses import dataclass
from decimal import Decimal


@dataclass
class RenderedTemplate:
    subject: str
    text_body: str
    html_body: str


def _format_currency(amount: Decimal, currency: str) -> str:
    symbols = {
        "EUR": "€",
        "USD": "$",
        "GBP": "£",
    }
    symbol = symbols.get(currency.upper(), "")
    numeric = f"{Decimal(amount):.2f}"
    return f"{symbol}{numeric}" if symbol else f"{numeric} {currency.upper()}"


def _brand_label(brand_id: str) -> str:
    return brand_id.replace("_", " ").replace("-", " ").title()


def render_gift_card_sms(
    *,
    brand_id: str,
    denomination: Decimal,
    currency: str,
    code: str,
    sender_label: str,
) -> str:
    amount = _format_currency(denomination, currency)
    return f"{sender_label}: here is your {amount} {_brand_label(brand_id)} gift card. Code: {code}"


def render_gift_card_email(
    *,
    brand_id: str,
    denomination: Decimal,
    currency: str,
    code: str,
    sender_label: str,
) -> RenderedTemplate:
    amount = _format_currency(denomination, currency)
    brand = _brand_label(brand_id)
    subject = f"Your {amount} {brand} gift card"
    text_body = "\n".join(
        [
            "Hi there,",
            "",
            f"{sender_label} sent you a {amount} {brand} gift card.",
            "",
            f"Redemption code: {code}",
            "",
            "Keep this code somewhere safe; anyone holding it can redeem the card.",
        ]
    )
    html_body = f"""
    <div style="font-family:Arial,sans-serif;color:#111;">
      <p>Hi there,</p>
      <p>{html.escape(sender_label)} sent you a <strong>{html.escape(amount)} {html.escape(brand)}</strong> gift card.</p>
      <p style="font-size:18px;">Redemption code:
        <code style="font-family:monospace;background:#f4f4f5;padding:4px 8px;">{html.escape(code)}</code>
      </p>
      <p style="font-size:12px;color:#666;">Keep this code somewhere safe; anyone holding it can redeem the card.</p>
    </div>
    """.strip()
    return RenderedTemplate(subject=subject, text_body=text_body, html_body=html_body)


__all__ = ["RenderedTemplate", "render_gift_card_email", "render_gift_card_sms"]
