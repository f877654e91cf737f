import pytest

from web_archiver import ResolutionIndex, ResponseEvent


def make_event(
    url,
    body=b"payload",
    *,
    resource_type="image",
    content_type="image/png",
    status=200,
    method="GET",
):
    return ResponseEvent(
        url=url,
        status=status,
        content_type=content_type,
        resource_type=resource_type,
        method=method,
        read_body=lambda: body,
    )


@pytest.fixture
def site_index():
    return ResolutionIndex(
        {
            "https://ex.com/static/app.js": "assets/js/app_1.js",
            "https://ex.com/static/site.css": "assets/css/site_1.css",
            "https://ex.com/img/hero.png": "assets/media/hero_1.png",
            "https://ex.com/img/hero@2x.png": "assets/media/hero@2x_1.png",
            "https://ex.com/img/bg.png": "assets/media/bg_1.png",
            "https://cdn.ex.com/font.woff2": "assets/media/font_1.woff2",
        }
    )
