from __future__ import annotations

import json
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

from apitemplate.logging import get_logger

logger = get_logger(__name__)

LOCALES_DIR = Path(__file__).resolve().parent.parent / "locales"
DEFAULT_LOCALES = ("en", "es")


class TranslationTable:
    """Read-only message catalog keyed by locale then message key.

    Built once at startup and shared by reference; nothing mutates it after load.
    """

    def __init__(
        self, catalogs: Mapping[str, Mapping[str, str]], *, default_locale: str = "en"
    ) -> None:
        if default_locale not in catalogs:
            raise ValueError(f"default locale {default_locale!r} has no catalog")
        self._catalogs = MappingProxyType(
            {lang: MappingProxyType(dict(entries)) for lang, entries in catalogs.items()}
        )
        self.default_locale = default_locale

    @classmethod
    def load(
        cls,
        directory: Path = LOCALES_DIR,
        *,
        locales: Iterable[str] = DEFAULT_LOCALES,
        default_locale: str = "en",
    ) -> "TranslationTable":
        catalogs: dict[str, dict[str, str]] = {}
        for lang in locales:
            path = directory / f"{lang}.json"
            with path.open(encoding="utf-8") as handle:
                data = json.load(handle)
            if not isinstance(data, dict):
                raise ValueError(f"translation file {path.name} must hold an object")
            catalogs[lang] = {str(k): str(v) for k, v in data.items()}
        logger.info("translations_loaded", locales=sorted(catalogs))
        return cls(catalogs, default_locale=default_locale)

    @property
    def locales(self) -> tuple[str, ...]:
        return tuple(self._catalogs)

    def supports(self, locale: str) -> bool:
        return locale in self._catalogs

    def translate(self, locale: Optional[str], key: str, **params: Any) -> str:
        lang = locale or self.default_locale
        catalog = self._catalogs.get(lang) or self._catalogs[self.default_locale]
        template = catalog.get(key)
        if template is None:
            return f"[Missing translation for {key} in {lang}]"
        if params:
            try:
                return template.format(**params)
            except (KeyError, IndexError):
                logger.warning("translation_format_failed", key=key, locale=lang)
        return template

    __call__ = translate


def negotiate_locale(
    accept_language: Optional[str], table: TranslationTable
) -> str:
    """Pick a locale from the first ``Accept-Language`` tag.

    Only the primary subtag is considered (``es-MX;q=0.9`` -> ``es``); anything
    unknown resolves to the table's default locale.
    """
    if not accept_language:
        return table.default_locale
    first = accept_language.split(",", 1)[0].split(";", 1)[0].strip()
    primary = first.split("-", 1)[0].split("_", 1)[0].lower()
    if primary and table.supports(primary):
        return primary
    return table.default_locale


__all__ = ["TranslationTable", "negotiate_locale", "LOCALES_DIR"]
