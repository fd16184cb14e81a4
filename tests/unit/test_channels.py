"""
Unit Tests - Channel Attribution
"""
import pytest

from growth_marts.database.models import ChannelSlug
from growth_marts.transformation.channels import (
    Vocabulary,
    campaign_source_for,
    paid_source_channel,
    resolve,
)


class TestOrderVocabulary:
    """Storefront source/medium labels"""

    @pytest.mark.parametrize(
        "label,expected",
        [
            ("facebook/cpc", ChannelSlug.META),
            ("instagram/paid", ChannelSlug.META),
            ("fb/cpc", ChannelSlug.META),
            ("ig/social", ChannelSlug.META),
            ("google/cpc", ChannelSlug.GOOGLE),
            ("google/shopping", ChannelSlug.GOOGLE),
            ("google/organic", ChannelSlug.ORGANIC),
            ("google/", ChannelSlug.ORGANIC),
            ("bing/organic", ChannelSlug.ORGANIC),
            ("klaviyo/email", ChannelSlug.EMAIL),
            ("newsletter/email", ChannelSlug.EMAIL),
            ("affiliate/referral", ChannelSlug.AFFILIATE),
            ("partnerize/affiliate", ChannelSlug.AFFILIATE),
            ("direct", ChannelSlug.DIRECT),
            ("(direct)/(none)", ChannelSlug.DIRECT),
            ("", ChannelSlug.DIRECT),
            ("tiktok/cpc", ChannelSlug.OTHER),
        ],
    )
    def test_labels(self, label, expected):
        assert resolve(label, Vocabulary.ORDER) is expected

    def test_short_meta_code_is_exact(self):
        """'fb' only matches as a whole source name"""
        assert resolve("fbm-partners/cpc", Vocabulary.ORDER) is ChannelSlug.OTHER

    def test_case_and_whitespace_insensitive(self):
        assert resolve("  Facebook / CPC ", Vocabulary.ORDER) is ChannelSlug.META

    def test_none_is_direct(self):
        assert resolve(None, Vocabulary.ORDER) is ChannelSlug.DIRECT


class TestTrafficVocabulary:
    """Analytics channel groups"""

    @pytest.mark.parametrize(
        "group,expected",
        [
            ("Paid Social", ChannelSlug.META),
            ("Paid Search", ChannelSlug.GOOGLE),
            ("Paid Shopping", ChannelSlug.GOOGLE),
            ("Organic Search", ChannelSlug.ORGANIC),
            ("Organic Social", ChannelSlug.ORGANIC),
            ("Email", ChannelSlug.EMAIL),
            ("Referral", ChannelSlug.AFFILIATE),
            ("Direct", ChannelSlug.DIRECT),
            ("Unassigned", ChannelSlug.OTHER),
            ("Display", ChannelSlug.OTHER),
        ],
    )
    def test_groups(self, group, expected):
        assert resolve(group, Vocabulary.TRAFFIC) is expected


class TestClosure:
    """Every input resolves to a member of the closed slug set"""

    @pytest.mark.parametrize("vocabulary", list(Vocabulary))
    @pytest.mark.parametrize(
        "raw",
        ["", None, "???", "facebook/cpc", "Paid Social", "a/b/c", "x" * 500, "🙂/emoji", "/", "direct/"],
    )
    def test_always_returns_slug(self, raw, vocabulary):
        result = resolve(raw, vocabulary)
        assert isinstance(result, ChannelSlug)
        assert result in set(ChannelSlug)

    def test_paid_sources(self):
        assert paid_source_channel("meta") is ChannelSlug.META
        assert paid_source_channel("google_ads") is ChannelSlug.GOOGLE
        assert paid_source_channel("tiktok") is None

    def test_campaign_source_for(self):
        assert campaign_source_for(ChannelSlug.META) == "meta"
        assert campaign_source_for(ChannelSlug.GOOGLE) == "google_ads"
        assert campaign_source_for(ChannelSlug.EMAIL) is None
