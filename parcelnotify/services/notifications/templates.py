from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from zoneinfo import ZoneInfo

from parcelnotify.core.config import get_settings


@dataclass(frozen=True)
class SmsTemplateData:
    pickup_date: datetime | None
    public_url: str


# Compact weekday/month names keep messages inside a single SMS segment.
_WEEKDAYS: dict[str, tuple[str, ...]] = {
    "sv": ("mån", "tis", "ons", "tors", "fre", "lör", "sön"),
    "en": ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"),
    "de": ("Mo", "Di", "Mi", "Do", "Fr", "Sa", "So"),
    "fi": ("ma", "ti", "ke", "to", "pe", "la", "su"),
}
_MONTHS: dict[str, tuple[str, ...]] = {
    "sv": ("jan", "feb", "mars", "apr", "maj", "juni", "juli", "aug", "sep", "okt", "nov", "dec"),
    "en": ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"),
    "de": ("Jan", "Feb", "März", "Apr", "Mai", "Juni", "Juli", "Aug", "Sep", "Okt", "Nov", "Dez"),
    "fi": ("tammi", "helmi", "maalis", "huhti", "touko", "kesä", "heinä", "elo", "syys", "loka", "marras", "joulu"),
}

_REMINDER = {
    "sv": "Matpaket {date} {time}: {url}",
    "en": "Food pickup {date} {time}: {url}",
    "de": "Essen {date} {time}: {url}",
    "fi": "Ruoka {date} {time}: {url}",
}
_UPDATE = {
    "sv": "Uppdatering! Matpaket {date} {time}: {url}",
    "en": "Update! Food pickup {date} {time}: {url}",
    "de": "Update! Essen {date} {time}: {url}",
    "fi": "Päivitys! Ruoka {date} {time}: {url}",
}
_CANCELLATION = {
    "sv": "Matpaket {date} {time} är inställt.",
    "en": "Food pickup {date} {time} is cancelled.",
    "de": "Essen {date} {time} abgesagt.",
    "fi": "Ruoka {date} {time} peruttu.",
}
_ENROLMENT = {
    "sv": "Välkommen! Du är registrerad för matpaket. Info: {url}",
    "en": "Welcome! You are registered for food parcels. Info: {url}",
    "de": "Willkommen! Sie sind für Essenspakete registriert. Info: {url}",
    "fi": "Tervetuloa! Olet rekisteröity ruokapaketteihin. Tiedot: {url}",
}
_TEMPLATES = {
    "reminder": _REMINDER,
    "update": _UPDATE,
    "cancellation": _CANCELLATION,
    "enrolment": _ENROLMENT,
}
_FALLBACK_LOCALE = "en"


def format_date_time_for_sms(value: datetime, locale: str) -> tuple[str, str]:
    local = value.astimezone(ZoneInfo(get_settings().sms_timezone))
    lang = locale if locale in _WEEKDAYS else _FALLBACK_LOCALE
    date_str = f"{_WEEKDAYS[lang][local.weekday()]} {local.day} {_MONTHS[lang][local.month - 1]}"
    return date_str, local.strftime("%H:%M")


def render_sms(template: str, locale: str, data: SmsTemplateData) -> str:
    """Render ``template`` (reminder, update, cancellation, enrolment) for ``locale``.

    Unknown locales fall back to English for both wording and date format.
    """
    try:
        texts = _TEMPLATES[template]
    except KeyError:
        raise ValueError(f"Unknown SMS template: {template}") from None
    lang = locale if locale in texts else _FALLBACK_LOCALE
    date_str, time_str = ("", "")
    if data.pickup_date is not None:
        date_str, time_str = format_date_time_for_sms(data.pickup_date, lang)
    return texts[lang].format(date=date_str, time=time_str, url=data.public_url)


def parcel_public_url(parcel_id: str) -> str:
    return f"{get_settings().public_base_url.rstrip('/')}/p/{parcel_id}"
