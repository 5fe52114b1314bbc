from datetime import date

import httpx

from tools.website import WebsiteClassifier, normalize_final_score

LIVELY_HOMEPAGE = """
<html><body>
  <nav>Pricing | Book now | Contact us</nav>
  <footer>&copy; 2026 Alpine Roofing</footer>
</body></html>
"""


def classifier(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)
    return WebsiteClassifier(client=client, today=lambda: date(2026, 3, 1))


class TestWebsiteClassifier:

    async def test_recent_site_with_all_bonuses(self):
        site = classifier(lambda request: httpx.Response(200, html=LIVELY_HOMEPAGE))

        signal = await site.analyze("https://alpineroofing.example")

        assert signal.method == "http_fetch"
        assert signal.reachable
        assert signal.base_score == 10
        assert signal.bonus_flags.pricing and signal.bonus_flags.booking and signal.bonus_flags.cta
        assert signal.final_score == 10

    async def test_stale_site_with_copyright(self):
        site = classifier(lambda request: httpx.Response(200, html="<p>Copyright 2009 Acme</p>"))

        signal = await site.analyze("https://acme.example")

        assert signal.base_score == 6
        assert signal.final_score == 2

    async def test_error_status(self):
        site = classifier(lambda request: httpx.Response(500, text="oops"))

        signal = await site.analyze("https://acme.example")

        assert signal.method == "http_status"
        assert signal.status == 500
        assert not signal.reachable
        assert signal.final_score == 2

    async def test_non_text_content(self):
        site = classifier(lambda request: httpx.Response(200, content=b"%PDF", headers={"content-type": "application/pdf"}))

        signal = await site.analyze("https://acme.example/brochure.pdf")

        assert signal.method == "http_status"

    async def test_falls_back_to_http_then_gives_up(self):
        seen = []

        def handler(request):
            seen.append(request.url.scheme)
            raise httpx.ConnectError("refused", request=request)

        site = classifier(handler)
        signal = await site.analyze("https://acme.example")

        assert seen == ["https", "http"]
        assert signal.method == "fallback"
        assert signal.base_score == 4
        assert signal.final_score == 2

    async def test_http_variant_used_when_https_fails(self):
        def handler(request):
            if request.url.scheme == "https":
                raise httpx.ConnectError("tls", request=request)
            return httpx.Response(200, html="<p>Welcome</p>")

        signal = await classifier(handler).analyze("https://acme.example")

        assert signal.url == "http://acme.example"
        assert signal.base_score == 5

    async def test_malformed_urls_fall_back(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(200, html=LIVELY_HOMEPAGE)

        site = classifier(handler)
        for url in ("https://example.com:port", "https://xn--zz.com"):
            signal = await site.analyze(url)

            assert signal.method == "fallback"
            assert not signal.reachable
            assert signal.final_score == 2
        assert calls == []

    async def test_no_url(self):
        assert await classifier(lambda request: httpx.Response(200)).analyze(None) is None


def test_normalize_final_score_rounds_half_up():
    assert normalize_final_score(5, 0) == 2
    assert normalize_final_score(6, 5) == 4
    assert normalize_final_score(10, 15) == 10
    assert normalize_final_score(1, 0) == 0
