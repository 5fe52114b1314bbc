from tools.identity import (
    IdentityMatcher,
    MatchPolicy,
    derive_identity_tokens,
    normalize_key,
    normalize_url_key,
    tokenize_query,
)


class TestTokens:

    def test_company_tokens_drop_legal_suffix(self):
        tokens, strong = derive_identity_tokens("Alpine Roofing LLC")
        assert tokens == ["alpine", "roofing"]
        assert strong == []

    def test_single_word_company_is_strong(self):
        tokens, strong = derive_identity_tokens("BrightPath")
        assert strong == ["brightpath"]
        assert tokens == ["brightpath", "bright", "path"]

    def test_short_words_kept_when_nothing_longer(self):
        tokens, _ = derive_identity_tokens("A1 Co")
        assert tokens == ["a1"]

    def test_blank_company(self):
        assert derive_identity_tokens("   ") == ([], [])
        assert derive_identity_tokens(None) == ([], [])

    def test_query_tokens(self):
        assert tokenize_query("Alpine Roofing Denver CO 80202") == ["alpine", "roofing", "denver"]


class TestIdentityMatcher:

    def test_requires_two_company_tokens(self):
        matcher = IdentityMatcher.for_company("Alpine Roofing Denver CO", "Alpine Roofing LLC")

        assert matcher.min_required == 2
        assert matcher.matches("https://www.google.com/maps/place/Alpine+Roofing+LLC")
        assert not matcher.matches("Alpine Dental Care - Google Maps")

    def test_financial_lead_does_not_match_unrelated_listing(self):
        matcher = IdentityMatcher.for_company("Summit Financial Services Boise", "Summit Financial Services")

        assert not matcher.matches("Summit Roofing & Gutters")
        assert matcher.matches("Summit Financial Group, Boise ID")

    def test_query_tokens_used_without_company(self):
        matcher = IdentityMatcher.for_company("Harbor Dental Portland", None)

        assert matcher.identity_tokens == ["harbor", "dental", "portland"]
        assert matcher.min_required == 0
        assert matcher.matches("Harbor Family Dentistry")
        assert not matcher.matches("Lakeside Orthodontics")

    def test_policy_controls_threshold(self):
        matcher = IdentityMatcher.for_company(
            "Alpine Roofing Denver", "Alpine Roofing LLC", MatchPolicy(max_required_matches=1)
        )
        assert matcher.min_required == 1
        assert matcher.matches("Alpine Dental Care")

    def test_matches_any_and_empty_text(self):
        matcher = IdentityMatcher.for_company("Alpine Roofing", "Alpine Roofing")
        assert not matcher.matches(None)
        assert matcher.matches_any(None, "", "alpine roofing denver")


class TestKeys:

    def test_normalize_key(self):
        assert normalize_key("  Alpine   Roofing\tLLC ") == "alpine roofing llc"
        assert normalize_key("") is None

    def test_normalize_url_key_drops_tracking_params(self):
        key = normalize_url_key("https://WWW.Google.com/maps/place/Alpine+Roofing/?hl=en&b=2&a=1&authuser=0")
        assert key == "www.google.com/maps/place/Alpine+Roofing?a=1&b=2"

    def test_normalize_url_key_without_host(self):
        assert normalize_url_key("Alpine Roofing") == "alpine roofing"
        assert normalize_url_key(None) is None
