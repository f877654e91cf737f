"""Shared resolution scenarios run against every matcher port.

The capture and server ports are the Python resolver with their tier sets;
the runtime port is the JavaScript interceptor evaluated in Chromium.
"""
import pytest

from replay_runtime import build_runtime_script
from web_archiver import CAPTURE_TIERS, RUNTIME_TIERS, SERVER_TIERS, resolve

SCENARIOS = [
    pytest.param(
        "/css/site.css",
        "https://ex.com/",
        {"https://ex.com/css/site.css": "assets/css/site_1.css"},
        "assets/css/site_1.css",
        id="exact",
    ),
    pytest.param(
        "https://ex.com/logo.png?v=2",
        "https://ex.com/",
        {
            "https://ex.com/logo.png": "assets/media/logo_plain.png",
            "https://ex.com/logo.png?v=2": "assets/media/logo_v2.png",
        },
        "assets/media/logo_v2.png",
        id="exact-preferred",
    ),
    pytest.param(
        "https://ex.com/logo.png?v=2",
        "https://ex.com/",
        {"https://ex.com/logo.png": "assets/media/logo_1.png"},
        "assets/media/logo_1.png",
        id="scenario-a",
    ),
    pytest.param(
        "/_next/image?url=https://ex.com/a.png&w=640",
        "https://ex.com/",
        {"https://ex.com/_next/image?url=https://ex.com/a.png&w=320": "assets/media/image_1.bin"},
        None,
        id="scenario-b",
    ),
    pytest.param(
        "/_next/image?url=%2Fa.png&w=64",
        "https://ex.com/",
        {"https://ex.com/_next/image": "assets/media/image_1.bin"},
        None,
        id="next-image-not-stripped",
    ),
    pytest.param(
        "/api/items?page=2&amp;sort=asc",
        "https://ex.com/shop",
        {"https://ex.com/api/items?page=2&sort=asc": "assets/api/data_1.json"},
        "assets/api/data_1.json",
        id="entity-encoded",
    ),
    pytest.param(
        "javascript:void(0)",
        "https://ex.com/",
        {"https://ex.com/": "assets/api/data_1.json"},
        None,
        id="javascript-scheme",
    ),
    pytest.param(
        "/x%FF.png",
        "https://ex.com/",
        {"https://ex.com/x%FE.png": "assets/media/x_fe.png"},
        None,
        id="invalid-utf8-escapes-distinct",
    ),
    pytest.param(
        "/files/a%zz%20b.png",
        "https://ex.com/",
        {"https://ex.com/files/a%zz b.png": "assets/media/a_1.png"},
        None,
        id="malformed-escape-not-decoded",
    ),
    pytest.param(
        "/nothing-here.png",
        "https://ex.com/",
        {"https://ex.com/logo.png": "assets/media/logo_1.png"},
        None,
        id="miss",
    ),
]


@pytest.fixture(scope="module")
def js_page():
    sync_api = pytest.importorskip("playwright.sync_api")
    try:
        pw = sync_api.sync_playwright().start()
    except Exception as e:
        pytest.skip(f"playwright unavailable: {e}")
    try:
        browser = pw.chromium.launch()
    except Exception as e:
        pw.stop()
        pytest.skip(f"chromium unavailable: {e}")
    page = browser.new_page()
    page.set_content("<html><head></head><body></body></html>")
    page.add_script_tag(content=build_runtime_script("port-test", {}))
    yield page
    browser.close()
    pw.stop()


@pytest.fixture(params=["capture", "runtime", "server"])
def matcher(request):
    if request.param == "capture":
        return lambda ref, index, page_url: resolve(ref, index, page_url, CAPTURE_TIERS)
    if request.param == "server":
        return lambda ref, index, page_url: resolve(ref, index, page_url, SERVER_TIERS)
    page = request.getfixturevalue("js_page")

    def run(ref, index, page_url):
        return page.evaluate(
            "([ref, index, pageUrl, tiers]) => window.__ARCHIVE_RUNTIME__.resolve(ref, index, pageUrl, tiers)",
            [ref, index, page_url, list(RUNTIME_TIERS)],
        )

    return run


@pytest.mark.parametrize("reference,page_url,index,expected", SCENARIOS)
def test_scenario(matcher, reference, page_url, index, expected):
    assert matcher(reference, index, page_url) == expected


@pytest.mark.parametrize("reference,page_url,index,expected", SCENARIOS)
def test_lookup_is_stable(matcher, reference, page_url, index, expected):
    assert {matcher(reference, index, page_url) for _ in range(3)} == {expected}
