"""Notification template resolution and rendering.

Templates are keyed by ``(channel, event_code, locale)`` and loaded from
``notification/templates/*.yaml`` (one file per channel), or from
``TEMPLATE_DIR`` when configured.

Resolution order
----------------
1. exact ``(channel, event_code, locale)``
2. ``(channel, event_code, default_locale)``
3. ``(channel, "Custom", locale)``
4. ``TemplateNotFoundError``, non-retryable for the subscription

Rendering
---------
Placeholders use ``${name}`` syntax.  Every name in
``TEMPLATE_PLACEHOLDERS`` is always defined; missing or ``None`` values
render as ``""`` and unknown placeholders render as ``""`` too, so
rendering never fails and never leaves a placeholder literal behind.

Channel post-processing:

- email   : HTML body (values HTML-escaped), subject always present
- sms/chat: plain text, whitespace collapsed, truncated with ``...``
- webhook : structured ``payload`` dict instead of a text body
"""
from __future__ import annotations

import html
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from string import Template as StringTemplate

import yaml
from bs4 import BeautifulSoup

from parcelnotify.core.constants import TEMPLATE_PLACEHOLDERS, ChannelType, EventCode
from parcelnotify.notification.errors import TemplateNotFoundError

logger = logging.getLogger(__name__)

BUNDLED_TEMPLATE_DIR = Path(__file__).parent / "templates"

ELLIPSIS = "..."
DEFAULT_EMAIL_SUBJECT = "Shipment Update: ${tracking_number}"
DEFAULT_WEBHOOK_EVENT = "shipment.updated"

_DEFAULT_MAX_LENGTHS: dict[str, int] = {
    ChannelType.SMS: 160,
    ChannelType.CHAT: 5000,
}

_REQUIRED_TEMPLATE_FIELDS: frozenset[str] = frozenset({"event_code", "locale"})
_KNOWN_TEMPLATE_FIELDS: frozenset[str] = frozenset({"event_code", "locale", "subject", "body"})


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass
class Template:
    """A message template for one (channel, event_code, locale) key."""

    channel: str
    event_code: str
    locale: str
    body: str = ""
    subject: str | None = None
    extra: dict = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.channel, self.event_code, self.locale)


@dataclass
class RenderedMessage:
    """Channel-ready message produced by ``TemplateManager.render``."""

    channel: str
    event_code: str
    locale: str
    body: str
    subject: str | None = None
    payload: dict | None = None
    variables: dict[str, str] = field(default_factory=dict)

    @property
    def plain_text(self) -> str:
        """Body with markup removed (email text alternative)."""
        return _plain_text(self.body)


class _BlankMapping(dict):
    """Substitution mapping where unknown names render as an empty string."""

    def __missing__(self, key: str) -> str:
        return ""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _to_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    return str(value)


def _tidy(text: str) -> str:
    lines = (" ".join(line.split()) for line in text.splitlines())
    return "\n".join(line for line in lines if line)


def _plain_text(markup: str) -> str:
    return _tidy(BeautifulSoup(markup or "", "html.parser").get_text())


def truncate(text: str, max_length: int) -> str:
    """Return *text* cut to *max_length* characters, ending in ``...`` when cut."""
    if max_length <= len(ELLIPSIS):
        raise ValueError(f"max_length must exceed {len(ELLIPSIS)}; got {max_length}")
    if len(text) <= max_length:
        return text
    return text[: max_length - len(ELLIPSIS)].rstrip() + ELLIPSIS


def _substitute(source: str | None, values: Mapping[str, str]) -> str:
    if not source:
        return ""
    return StringTemplate(source).safe_substitute(values)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_template_file(path: str | Path) -> list[Template]:
    """Load all templates from a single channel YAML file.

    The file holds a ``channel``, an optional ``layouts`` mapping
    (locale → wrapper containing ``${content}``), and a ``templates``
    list.  Keys other than event_code/locale/subject/body are kept in
    ``Template.extra``.

    Raises
    ------
    ValueError
        If the document is not a mapping or a template misses a
        required field.
    """
    path = Path(path)
    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)

    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a YAML mapping, got {type(data).__name__}")
    if "channel" not in data or not isinstance(data.get("templates"), list):
        raise ValueError(f"{path}: 'channel' and a 'templates' list are required")

    channel = str(data["channel"])
    layouts: dict = data.get("layouts") or {}
    templates: list[Template] = []

    for index, entry in enumerate(data["templates"]):
        if not isinstance(entry, dict):
            raise ValueError(f"{path}: template #{index} is not a mapping")
        missing = _REQUIRED_TEMPLATE_FIELDS - entry.keys()
        if missing:
            raise ValueError(f"{path}: template #{index} missing required fields: {sorted(missing)}")

        locale = str(entry["locale"])
        body = entry.get("body") or ""
        layout = layouts.get(locale)
        if layout and body:
            body = layout.replace("${content}", body.strip())

        templates.append(
            Template(
                channel=channel,
                event_code=str(entry["event_code"]),
                locale=locale,
                body=body,
                subject=entry.get("subject"),
                extra={k: v for k, v in entry.items() if k not in _KNOWN_TEMPLATE_FIELDS},
            )
        )
    return templates


def load_all_templates(directory: str | Path = BUNDLED_TEMPLATE_DIR) -> list[Template]:
    """Load every ``*.yaml`` template file in *directory*."""
    directory = Path(directory)
    templates: list[Template] = []
    for path in sorted(directory.iterdir()):
        if path.suffix not in (".yaml", ".yml"):
            continue
        templates.extend(load_template_file(path))
    return templates


# ---------------------------------------------------------------------------
# TemplateManager
# ---------------------------------------------------------------------------

class TemplateManager:
    """Read-only lookup table of templates plus channel-aware rendering."""

    def __init__(
        self,
        templates: list[Template] | None = None,
        *,
        default_locale: str = "en",
        max_lengths: Mapping[str, int] | None = None,
    ) -> None:
        self.default_locale = default_locale
        self.max_lengths: dict[str, int] = dict(_DEFAULT_MAX_LENGTHS)
        if max_lengths:
            self.max_lengths.update(max_lengths)
        self._templates: dict[tuple[str, str, str], Template] = {}
        for template in templates or []:
            self.register(template)

    def __len__(self) -> int:
        return len(self._templates)

    def register(self, template: Template) -> None:
        """Register (or replace) a template under its key."""
        self._templates[template.key] = template

    # -- resolve ------------------------------------------------------------

    def resolve(self, channel: str, event_code: str, locale: str | None = None) -> Template:
        """Return the best template for the key, following the fallback order."""
        locale = locale or self.default_locale
        candidates = (
            (channel, event_code, locale),
            (channel, event_code, self.default_locale),
            (channel, EventCode.CUSTOM.value, locale),
        )
        for key in candidates:
            template = self._templates.get(key)
            if template is not None:
                return template

        logger.error(
            "Template configuration gap: channel=%s event_code=%s locale=%s",
            channel, event_code, locale,
        )
        raise TemplateNotFoundError(
            f"No template for channel={channel!r} event_code={event_code!r} locale={locale!r}"
        )

    # -- render -------------------------------------------------------------

    def render(self, template: Template, variables: Mapping[str, object]) -> RenderedMessage:
        """Substitute *variables* into *template* and post-process for its channel."""
        values = {name: "" for name in TEMPLATE_PLACEHOLDERS}
        values.update({key: _to_text(value) for key, value in variables.items()})
        if not values["event_code"]:
            values["event_code"] = template.event_code
        mapping = _BlankMapping(values)
        channel = template.channel

        if channel == ChannelType.WEBHOOK:
            payload = {
                "event": template.extra.get("event_type", DEFAULT_WEBHOOK_EVENT),
                "event_code": values["event_code"],
                "locale": template.locale,
                "data": {name: values[name] for name in TEMPLATE_PLACEHOLDERS},
            }
            return RenderedMessage(
                channel=channel,
                event_code=template.event_code,
                locale=template.locale,
                body="",
                subject=_substitute(template.subject, mapping) or None,
                payload=payload,
                variables=values,
            )

        if channel == ChannelType.EMAIL:
            escaped = _BlankMapping({key: html.escape(value) for key, value in values.items()})
            return RenderedMessage(
                channel=channel,
                event_code=template.event_code,
                locale=template.locale,
                body=_substitute(template.body, escaped),
                subject=_substitute(template.subject or DEFAULT_EMAIL_SUBJECT, mapping),
                variables=values,
            )

        # Markup is stripped from the template only; values are plain text.
        body = _tidy(_substitute(_plain_text(template.body), mapping))
        max_length = self.max_lengths.get(channel)
        if max_length:
            body = truncate(body, max_length)
        return RenderedMessage(
            channel=channel,
            event_code=template.event_code,
            locale=template.locale,
            body=body,
            variables=values,
        )

    def preview(self, channel: str, event_code: str, locale: str | None = None) -> RenderedMessage:
        """Render the resolved template with representative sample data."""
        template = self.resolve(channel, event_code, locale)
        now = datetime.now(timezone.utc)
        sample = {
            "tracking_number": "TH1234567890",
            "current_status": "InTransit",
            "event_code": event_code,
            "event_description": "Package has been picked up",
            "event_time": now,
            "facility": "Bangkok Distribution Center",
            "location": "Bangkok",
            "eta": (now + timedelta(days=2)).strftime("%Y-%m-%d"),
            "service_type": "Standard",
            "unsubscribe_url": "https://example.com/unsubscribe/token123",
        }
        return self.render(template, sample)

    # -- construction -------------------------------------------------------

    @classmethod
    def from_directory(cls, directory: str | Path, **kwargs) -> TemplateManager:
        return cls(load_all_templates(directory), **kwargs)

    @classmethod
    def default(cls, settings=None) -> TemplateManager:
        """Return a manager for the configured (or bundled) template directory."""
        if settings is None:
            from parcelnotify.core.settings import get_settings

            settings = get_settings()
        directory = settings.template_dir or BUNDLED_TEMPLATE_DIR
        return cls.from_directory(
            directory,
            default_locale=settings.default_locale,
            max_lengths={
                ChannelType.SMS: settings.sms_max_length,
                ChannelType.CHAT: settings.chat_max_length,
            },
        )
