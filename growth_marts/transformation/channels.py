"""
Channel Attribution Resolver

Reconciles two independent channel vocabularies into one closed set of
canonical slugs:

- ORDER: storefront attribution labels of the form ``source/medium``
  (``facebook/cpc``, ``klaviyo/email``, ``affiliate/referral``)
- TRAFFIC: analytics channel-group strings (``Paid Social``,
  ``Organic Search``, ``Email``, ``Referral``, ``Direct``)

Both map onto ``ChannelSlug`` so spend, orders and traffic for "meta" line up.
Resolution is total: anything unrecognized becomes ``other``.
"""

from enum import Enum
from typing import Optional

from growth_marts.database.models import ChannelSlug


class Vocabulary(str, Enum):
    """Which label universe a raw channel string comes from"""
    ORDER = "order"
    TRAFFIC = "traffic"


META_SOURCES = ("facebook", "instagram", "meta")
META_SHORT_SOURCES = ("fb", "ig")
EMAIL_SOURCES = ("klaviyo", "mailchimp", "omnisend")
SEARCH_ENGINES = ("google", "bing", "yahoo", "duckduckgo", "ecosia", "baidu")

PAID_MEDIUMS = ("cpc", "ppc", "paid", "shopping", "paidsearch")
ORGANIC_MEDIUMS = ("organic", "", "surfaces")
DIRECT_LABELS = ("direct", "(direct)", "(none)")

# Ad platforms whose spend exports feed fact_spend
PAID_SOURCE_CHANNELS = {
    "meta": ChannelSlug.META,
    "google_ads": ChannelSlug.GOOGLE,
}


def resolve(raw_label: Optional[str], vocabulary: Vocabulary) -> ChannelSlug:
    """
    Map a raw channel label to its canonical slug.

    Args:
        raw_label: Label in the given vocabulary; may be empty or None
        vocabulary: Universe the label comes from

    Returns:
        A ChannelSlug; never raises, never returns the raw input
    """
    if vocabulary is Vocabulary.TRAFFIC:
        return _resolve_traffic(raw_label or "")
    return _resolve_order(raw_label or "")


def _resolve_order(label: str) -> ChannelSlug:
    label = label.strip().lower()
    if not label or label in DIRECT_LABELS:
        return ChannelSlug.DIRECT

    source, _, medium = label.partition("/")
    source = source.strip()
    medium = medium.strip()

    if source in DIRECT_LABELS and medium in ("", "none", "(none)"):
        return ChannelSlug.DIRECT

    # Meta: exact short codes only, "fb" must not match e.g. "fbm-partners"
    if any(s in source for s in META_SOURCES) or source in META_SHORT_SOURCES:
        return ChannelSlug.META

    if "google" in source:
        if medium in PAID_MEDIUMS:
            return ChannelSlug.GOOGLE
        if medium in ORGANIC_MEDIUMS:
            return ChannelSlug.ORGANIC

    if any(s in source for s in EMAIL_SOURCES) or medium == "email":
        return ChannelSlug.EMAIL

    if "affiliate" in source or medium in ("affiliate", "referral"):
        return ChannelSlug.AFFILIATE

    if any(engine in source for engine in SEARCH_ENGINES) and medium in ORGANIC_MEDIUMS:
        return ChannelSlug.ORGANIC

    return ChannelSlug.OTHER


def _resolve_traffic(group: str) -> ChannelSlug:
    ch = group.strip().lower()
    if "paid social" in ch:
        # Paid social is overwhelmingly Meta for this storefront
        return ChannelSlug.META
    if "paid search" in ch or "paid shopping" in ch:
        return ChannelSlug.GOOGLE
    if "organic search" in ch or "organic social" in ch or "organic shopping" in ch:
        return ChannelSlug.ORGANIC
    if "email" in ch:
        return ChannelSlug.EMAIL
    if "referral" in ch or "affiliate" in ch:
        return ChannelSlug.AFFILIATE
    if "direct" in ch:
        return ChannelSlug.DIRECT
    return ChannelSlug.OTHER


def paid_source_channel(source: str) -> Optional[ChannelSlug]:
    """Channel for an ad-platform spend source, or None for unknown platforms"""
    return PAID_SOURCE_CHANNELS.get(source)


def campaign_source_for(channel: ChannelSlug) -> Optional[str]:
    """Spend source whose campaigns an order on ``channel`` can be attributed to"""
    for source, slug in PAID_SOURCE_CHANNELS.items():
        if slug is channel:
            return source
    return None
