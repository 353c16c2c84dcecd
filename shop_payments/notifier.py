"""Order e-mails sent through AWS SES.

Sending is best effort: callers log failures and carry on, a missing e-mail
never affects the order state.
"""

from html import escape

import boto3

from shop_payments.cart import format_amount, load_cart
from shop_payments.config import get_settings


def get_ses_client():
    return boto3.client("ses", region_name=get_settings().aws_region)


def _send(to: str, subject: str, text: str, html: str):
    settings = get_settings()
    return get_ses_client().send_email(
        Source=settings.ses_from_email,
        Destination={"ToAddresses": [to]},
        Message={
            "Subject": {"Data": subject, "Charset": "UTF-8"},
            "Body": {
                "Text": {"Data": text, "Charset": "UTF-8"},
                "Html": {"Data": html, "Charset": "UTF-8"},
            },
        },
    )


def _address_lines(address) -> list:
    if address is None:
        return []
    lines = [address.name, address.line1, address.line2,
             " ".join(part for part in (address.postal_code, address.city, address.state) if part),
             address.country]
    return [line for line in lines if line]


def _item_lines(order) -> list:
    lines = []
    for item in load_cart(order.cart_snapshot):
        lines.append(f"{item.get('name', 'Item')} x{item.get('quantity', 1)} ({item.get('unit_price', '')} {order.currency})")
    return lines


def render_order_summary(order):
    """Plain-text and HTML bodies describing an order."""
    total = format_amount(order.amount_minor_units, order.currency)
    items = _item_lines(order)
    address = _address_lines(order.address)

    text = [f"Order #{order.id}", ""]
    text += [f"- {line}" for line in items]
    text += ["", f"Total: {total}"]
    if address:
        text += ["", "Shipping address:"] + address

    html = [f"<h2>Order #{escape(order.id)}</h2>", "<ul>"]
    html += [f"<li>{escape(line)}</li>" for line in items]
    html += ["</ul>", f"<p><strong>Total: {escape(total)}</strong></p>"]
    if address:
        html.append("<p>" + "<br>".join(escape(line) for line in address) + "</p>")
    return "\n".join(text), "\n".join(html)


def send_order_confirmation(order):
    text, html = render_order_summary(order)
    return _send(
        order.buyer_email,
        f"Order confirmation #{order.id}",
        "Thank you for your order!\n\n" + text,
        "<p>Thank you for your order!</p>\n" + html,
    )


def send_admin_notification(order):
    """Tell the shop a paid order needs a shipping label. No-op without ADMIN_EMAIL."""
    settings = get_settings()
    if not settings.admin_email:
        return None
    text, html = render_order_summary(order)
    link = f"{settings.shop_url}/admin/orders/{order.id}"
    details = [f"Customer email: {order.buyer_email or '-'}"]
    if order.repair_type:
        details.append(f"Repair type: {order.repair_type}")
    if order.shipping_option:
        details.append(f"Shipping option: {order.shipping_option}")
    return _send(
        settings.admin_email,
        f"New Order Received - Order #{order.id}",
        "\n".join(details) + "\n\n" + text + f"\n\nView order at: {link}",
        "".join(f"<p>{escape(line)}</p>" for line in details) + html + f'<p><a href="{escape(link)}">View order</a></p>',
    )
