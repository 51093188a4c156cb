# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Jinja2 implementation of the ``TemplateRenderer`` collaborator.

Each ``EmailType`` has a built-in HTML template and a set of required data
keys. Rendering uses ``StrictUndefined`` and HTML autoescaping, so a missing
key or a broken template surfaces as ``InvalidTemplate`` rather than as an
email with holes in it. Deployments can override any template with
``register``.
"""

from __future__ import annotations

from typing import Any

from jinja2 import DictLoader, Environment, StrictUndefined, select_autoescape
from jinja2.exceptions import TemplateError

from .errors import InvalidTemplate
from .models import EmailType

_LAYOUT = """<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; color: #222;">
{% block content %}{% endblock %}
<p style="font-size: 12px; color: #888;">You receive this email because you have an account with us.
{% if unsubscribeUrl is defined %}<a href="{{ unsubscribeUrl }}">Manage your email preferences</a>.{% endif %}</p>
</body>
</html>
"""

_MARKETING = """{% extends "layout.html" %}{% block content %}
<h1>{{ headline if headline is defined else subject }}</h1>
<p>Hi {{ userName }},</p>
{% if body is defined %}<p>{{ body }}</p>{% endif %}
{% block offer %}{% endblock %}
{% if ctaUrl is defined %}<p><a href="{{ ctaUrl }}">{{ ctaText if ctaText is defined else "Shop now" }}</a></p>{% endif %}
{% endblock %}
"""

BUILTIN_TEMPLATES: dict[str, str] = {
    "layout.html": _LAYOUT,
    "marketing.html": _MARKETING,
    EmailType.ORDER_CONFIRMATION.value: """{% extends "layout.html" %}{% block content %}
<h1>Thank you for your order, {{ userName }}!</h1>
<p>Order <strong>{{ orderNumber }}</strong>, total {{ orderTotal }}.</p>
{% if items is defined and items %}<ul>{% for item in items %}<li>{{ item.name if item.name is defined else item }}</li>{% endfor %}</ul>{% endif %}
{% if estimatedDelivery is defined %}<p>Estimated delivery: {{ estimatedDelivery }}</p>{% endif %}
{% endblock %}
""",
    EmailType.ORDER_SHIPPED.value: """{% extends "layout.html" %}{% block content %}
<h1>Your order is on its way, {{ userName }}</h1>
<p>Order <strong>{{ orderNumber }}</strong> shipped{% if carrier is defined %} with {{ carrier }}{% endif %}.</p>
<p>Tracking number: {{ trackingNumber }}</p>
{% if estimatedDelivery is defined %}<p>Estimated delivery: {{ estimatedDelivery }}</p>{% endif %}
{% endblock %}
""",
    EmailType.ORDER_DELIVERED.value: """{% extends "layout.html" %}{% block content %}
<h1>Delivered!</h1>
<p>Hi {{ userName }}, order <strong>{{ orderNumber }}</strong> was delivered{% if deliveryDate is defined %} on {{ deliveryDate }}{% endif %}.</p>
{% endblock %}
""",
    EmailType.PASSWORD_RESET.value: """{% extends "layout.html" %}{% block content %}
<p>Hi {{ userName }},</p>
<p>Use the link below to choose a new password. If you did not ask for it, ignore this email.</p>
<p><a href="{{ resetUrl }}">Reset your password</a></p>
{% endblock %}
""",
    EmailType.WELCOME.value: """{% extends "layout.html" %}{% block content %}
<h1>Welcome, {{ firstName if firstName is defined else userName }}!</h1>
<p>We are glad to have you with us.</p>
{% endblock %}
""",
    EmailType.SALES_ANNOUNCEMENT.value: """{% extends "marketing.html" %}{% block offer %}
{% if saleEnds is defined %}<p>The sale ends {{ saleEnds }}.</p>{% endif %}
{% endblock %}
""",
    EmailType.SPECIAL_OFFER.value: """{% extends "marketing.html" %}{% block offer %}
{% if discountCode is defined %}<p>Use code <strong>{{ discountCode }}</strong> at checkout.</p>{% endif %}
{% endblock %}
""",
    EmailType.NEW_PRODUCT.value: """{% extends "marketing.html" %}{% block offer %}
{% if productName is defined %}<h2>{{ productName }}</h2>{% endif %}
{% endblock %}
""",
    EmailType.ADMIN_ALERT.value: """{% extends "layout.html" %}{% block content %}
<h1>Admin alert</h1>
<p>{{ message }}</p>
{% endblock %}
""",
}

REQUIRED_KEYS: dict[EmailType, tuple[str, ...]] = {
    EmailType.ORDER_CONFIRMATION: ("userName", "orderNumber", "orderTotal"),
    EmailType.ORDER_SHIPPED: ("userName", "orderNumber", "trackingNumber"),
    EmailType.ORDER_DELIVERED: ("userName", "orderNumber"),
    EmailType.PASSWORD_RESET: ("userName", "resetUrl"),
    EmailType.WELCOME: ("userName",),
    EmailType.SALES_ANNOUNCEMENT: ("userName",),
    EmailType.SPECIAL_OFFER: ("userName",),
    EmailType.NEW_PRODUCT: ("userName",),
    EmailType.ADMIN_ALERT: ("message",),
}


class JinjaTemplateRenderer:
    """Render email bodies from the built-in (or registered) Jinja2 templates."""

    def __init__(self, templates: dict[str, str] | None = None):
        self.templates = dict(BUILTIN_TEMPLATES)
        if templates:
            self.templates.update(templates)
        self.env = Environment(
            loader=DictLoader(self.templates),
            autoescape=select_autoescape(default=True, default_for_string=True),
            undefined=StrictUndefined,
        )

    def register(self, template_type: EmailType | str, source: str) -> None:
        """Replace the template of ``template_type``.

        The loader shares ``self.templates``; auto-reload picks up the change.
        """
        self.templates[EmailType(template_type).value] = source

    @property
    def template_count(self) -> int:
        return len(EmailType)

    def render(self, template_type: str, data: dict[str, Any]) -> str:
        """Return the HTML body for ``template_type``.

        Raises:
            InvalidTemplate: Unknown type, missing required keys or a template
                error (including any undefined variable).
        """
        try:
            email_type = EmailType(template_type)
        except ValueError as exc:
            raise InvalidTemplate(f"Unknown template type '{template_type}'") from exc
        missing = [k for k in REQUIRED_KEYS[email_type] if data.get(k) in (None, "")]
        if missing:
            raise InvalidTemplate(f"Missing template data for {email_type.value}: {', '.join(missing)}")
        try:
            return self.env.get_template(email_type.value).render(**data)
        except TemplateError as exc:
            raise InvalidTemplate(f"Cannot render {email_type.value}: {exc}") from exc
