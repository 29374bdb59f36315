"""Localized violation messages.

Every violation kind has a template per supported locale. Templates use
``str.format`` placeholders; unknown placeholders fall back to an empty
string so a rule author's custom message can never crash validation.
"""

from __future__ import annotations

import string
from typing import Any

from rapengine.core.types import ConstraintKind

DEFAULT_LOCALE = "en"

MESSAGES: dict[ConstraintKind, dict[str, str]] = {
    ConstraintKind.REQUIRED: {
        "en": 'Field "{attribute}" is required',
        "de": 'Feld "{attribute}" ist ein Pflichtfeld',
    },
    ConstraintKind.TYPE: {
        "en": 'Field "{attribute}" must be of type {type} (got {value!r})',
        "de": 'Feld "{attribute}" muss vom Typ {type} sein (erhalten: {value!r})',
    },
    ConstraintKind.RANGE: {
        "en": 'Field "{attribute}" must be {bound} (got {value})',
        "de": 'Feld "{attribute}" muss {bound} sein (erhalten: {value})',
    },
    ConstraintKind.LENGTH: {
        "en": 'Field "{attribute}" must have {bound} characters (got {length})',
        "de": 'Feld "{attribute}" muss {bound} Zeichen haben (erhalten: {length})',
    },
    ConstraintKind.UNIQUE: {
        "en": 'Value {value!r} for "{attribute}" is already used by another record',
        "de": 'Wert {value!r} für "{attribute}" wird bereits von einem anderen Datensatz verwendet',
    },
    ConstraintKind.PATTERN: {
        "en": 'Field "{attribute}" has an invalid format: {value!r}{hint}',
        "de": 'Feld "{attribute}" hat ein ungültiges Format: {value!r}{hint}',
    },
    ConstraintKind.ENUM: {
        "en": 'Field "{attribute}" must be one of {allowed} (got {value!r})',
        "de": 'Feld "{attribute}" muss einer der Werte {allowed} sein (erhalten: {value!r})',
    },
    ConstraintKind.TIME_RANGE: {
        "en": '"{start}" must be on or before "{end}"',
        "de": '"{start}" muss vor oder gleich "{end}" sein',
    },
    ConstraintKind.NUMERIC_RANGE: {
        "en": '"{lower}" must be less than or equal to "{upper}"',
        "de": '"{lower}" muss kleiner oder gleich "{upper}" sein',
    },
    ConstraintKind.CUSTOM_SCRIPT: {
        "en": 'Rule "{rule}" is not satisfied',
        "de": 'Regel "{rule}" ist nicht erfüllt',
    },
    ConstraintKind.SCRIPT_ERROR: {
        "en": 'Rule "{rule}" could not be evaluated: {error}',
        "de": 'Regel "{rule}" konnte nicht ausgewertet werden: {error}',
    },
}


class Localized(dict):
    """Placeholder value that differs per locale (e.g. 'at least 0' / 'mindestens 0')."""


class _LenientFormatter(string.Formatter):
    """Formatter that renders missing placeholders as empty strings."""

    def get_value(self, key: Any, args: Any, kwargs: dict[str, Any]) -> Any:
        if isinstance(key, str):
            return kwargs.get(key, "")
        return super().get_value(key, args, kwargs)


_formatter = _LenientFormatter()


class MessageCatalog:
    """Renders violation messages in every configured locale."""

    def __init__(
        self,
        locales: list[str] | None = None,
        default_locale: str = DEFAULT_LOCALE,
        overrides: dict[ConstraintKind, dict[str, str]] | None = None,
    ) -> None:
        """Initialize the catalog.

        Args:
            locales: Locales rendered for every violation (default: en, de)
            default_locale: Locale used when a requested one is unknown
            overrides: Replacement templates per kind and locale
        """
        self.locales = list(locales or ["en", "de"])
        if default_locale not in self.locales:
            self.locales.insert(0, default_locale)
        self.default_locale = default_locale
        self._templates = {kind: dict(per_locale) for kind, per_locale in MESSAGES.items()}
        for kind, per_locale in (overrides or {}).items():
            self._templates.setdefault(kind, {}).update(per_locale)

    def resolve_locale(self, locale: str | None) -> str:
        """Return a supported locale, falling back to the default."""
        if locale and locale in self.locales:
            return locale
        if locale and "-" in locale and locale.split("-", 1)[0] in self.locales:
            return locale.split("-", 1)[0]
        return self.default_locale

    def render_all(
        self,
        kind: ConstraintKind,
        custom: dict[str, str] | None = None,
        **params: Any,
    ) -> dict[str, str]:
        """Render a message for every locale.

        Args:
            kind: Violation kind selecting the built-in template
            custom: Author-supplied templates per locale (take precedence)
            **params: Placeholder values

        Returns:
            Mapping locale -> rendered message
        """
        templates = self._templates.get(kind, {})
        rendered = {}
        for locale in self.locales:
            if custom:
                # Author messages win; a missing locale reuses the default one
                template = (
                    custom.get(locale) or custom.get(self.default_locale) or next(iter(custom.values()))
                )
            else:
                template = templates.get(locale) or templates.get(self.default_locale, str(kind))
            values = {
                key: (value.get(locale) or value.get(self.default_locale, ""))
                if isinstance(value, Localized)
                else value
                for key, value in params.items()
            }
            rendered[locale] = _formatter.format(template, **values)
        return rendered
