"""Tests for localized violation messages."""

from rapengine.core.types import ConstraintKind
from rapengine.rules.messages import MESSAGES, Localized, MessageCatalog


class TestMessageCatalog:
    """Tests for MessageCatalog."""

    def test_every_kind_has_en_and_de(self):
        """Both supported locales have a template for every violation kind."""
        for kind in ConstraintKind:
            assert set(MESSAGES[kind]) >= {"en", "de"}, kind

    def test_render_all_locales(self):
        """One call renders every configured locale."""
        catalog = MessageCatalog()
        messages = catalog.render_all(ConstraintKind.REQUIRED, attribute="title")
        assert messages == {
            "en": 'Field "title" is required',
            "de": 'Feld "title" ist ein Pflichtfeld',
        }

    def test_localized_placeholder(self):
        """Localized values are picked per locale."""
        catalog = MessageCatalog()
        messages = catalog.render_all(
            ConstraintKind.RANGE,
            attribute="value",
            value=-1,
            bound=Localized(en="at least 0", de="mindestens 0"),
        )
        assert messages["en"] == 'Field "value" must be at least 0 (got -1)'
        assert messages["de"] == 'Feld "value" muss mindestens 0 sein (erhalten: -1)'

    def test_custom_messages_win(self):
        """Author messages replace the built-in template."""
        catalog = MessageCatalog()
        messages = catalog.render_all(
            ConstraintKind.CUSTOM_SCRIPT,
            custom={"en": "Too expensive: {value}"},
            attribute="price",
            value=60,
        )
        # A locale without its own message reuses the default one
        assert messages == {"en": "Too expensive: 60", "de": "Too expensive: 60"}

    def test_unknown_placeholder_renders_empty(self):
        """A typo in a custom message never breaks validation."""
        catalog = MessageCatalog()
        messages = catalog.render_all(
            ConstraintKind.CUSTOM_SCRIPT, custom={"en": "Bad {valeu}!"}, value=1
        )
        assert messages["en"] == "Bad !"

    def test_resolve_locale(self):
        """Unknown locales fall back to the default; regions to their language."""
        catalog = MessageCatalog(default_locale="de")
        assert catalog.resolve_locale("en") == "en"
        assert catalog.resolve_locale("en-GB") == "en"
        assert catalog.resolve_locale("fr") == "de"
        assert catalog.resolve_locale(None) == "de"

    def test_default_locale_is_always_rendered(self):
        """The default locale joins the locale list when missing."""
        catalog = MessageCatalog(locales=["de"], default_locale="en")
        assert catalog.locales == ["en", "de"]

    def test_overrides(self):
        """Templates can be overridden per kind and locale."""
        catalog = MessageCatalog(overrides={ConstraintKind.REQUIRED: {"en": "{attribute} missing"}})
        messages = catalog.render_all(ConstraintKind.REQUIRED, attribute="title")
        assert messages["en"] == "title missing"
        assert messages["de"] == 'Feld "title" ist ein Pflichtfeld'
