import io
import json
import os
import zipfile

import pytest

from replay_server import archive_id_from_referer, create_app, iter_zip, match_request

ARCHIVE_ID = "ex_com_1700000000000"
REFERER = f"http://localhost:3000/view/{ARCHIVE_ID}/index.html"


@pytest.fixture
def archives(tmp_path):
    root = tmp_path / "archives"
    archive = root / ARCHIVE_ID
    (archive / "assets" / "media").mkdir(parents=True)
    (archive / "assets" / "api").mkdir(parents=True)
    (archive / "index.html").write_text("<html><body>home</body></html>", encoding="utf-8")
    (archive / "assets" / "media" / "logo_1.png").write_bytes(b"LOGO")
    (archive / "assets" / "media" / "my_1.png").write_bytes(b"SPACED")
    (archive / "assets" / "media" / "cafe_1.png").write_bytes(b"CAFE")
    (archive / "assets" / "api" / "data_0.json").write_text('{"page": 1}', encoding="utf-8")
    (archive / "assets" / "api" / "data_1.json").write_text('{"page": 2}', encoding="utf-8")
    url_map = {
        "https://ex.com/logo.png": "assets/media/logo_1.png",
        "https://ex.com/api/items?page=1": "assets/api/data_0.json",
        "https://ex.com/api/items?page=2": "assets/api/data_1.json",
        "https://ex.com/gone.png": "assets/media/gone_1.png",
        "https://ex.com/img/my%20logo.png": "assets/media/my_1.png",
        "https://ex.com/img/caf%C3%A9.png": "assets/media/cafe_1.png",
    }
    (archive / "urlMap.json").write_text(json.dumps(url_map), encoding="utf-8")
    meta = {
        "id": ARCHIVE_ID,
        "originalUrl": "https://ex.com/",
        "title": "Example",
        "timestamp": 1700000000000,
        "totalPages": 1,
        "totalAssets": 4,
    }
    (archive / "metadata.json").write_text(json.dumps(meta), encoding="utf-8")
    (root / "older_1600000000000").mkdir()
    return root


@pytest.fixture
def client(archives):
    app = create_app(archives)
    app.config["TESTING"] = True
    return app.test_client()


class TestView:
    def test_serves_index_by_default(self, client):
        r = client.get(f"/view/{ARCHIVE_ID}/")
        assert r.status_code == 200
        assert b"home" in r.data

    def test_serves_literal_asset(self, client):
        r = client.get(f"/view/{ARCHIVE_ID}/assets/media/logo_1.png")
        assert r.status_code == 200
        assert r.data == b"LOGO"

    def test_missing_literal_falls_back_to_matcher(self, client):
        r = client.get(f"/view/{ARCHIVE_ID}/logo.png")
        assert r.status_code == 200
        assert r.data == b"LOGO"

    def test_encoded_asset_name_under_view(self, client):
        r = client.get(f"/view/{ARCHIVE_ID}/img/my%20logo.png")
        assert r.status_code == 200
        assert r.data == b"SPACED"

    def test_unknown_archive(self, client):
        assert client.get("/view/nope_1/index.html").status_code == 404


class TestRefererFallback:
    def test_root_relative_request(self, client):
        r = client.get("/logo.png", headers={"Referer": REFERER})
        assert r.status_code == 200
        assert r.data == b"LOGO"

    def test_exact_query_preferred(self, client):
        r = client.get("/api/items?page=2", headers={"Referer": REFERER})
        assert r.status_code == 200
        assert json.loads(r.data) == {"page": 2}

    def test_encoded_asset_name(self, client):
        r = client.get("/img/my%20logo.png", headers={"Referer": REFERER})
        assert r.status_code == 200
        assert r.data == b"SPACED"

    def test_non_ascii_asset_name(self, client):
        r = client.get("/img/caf%C3%A9.png", headers={"Referer": REFERER})
        assert r.status_code == 200
        assert r.data == b"CAFE"

    def test_without_referer(self, client):
        r = client.get("/logo.png")
        assert r.status_code == 404
        assert r.data == b"Not Found in Archive"

    def test_unmatched_request(self, client):
        assert client.get("/nothing.png", headers={"Referer": REFERER}).status_code == 404

    def test_resolved_file_missing_on_disk(self, client):
        assert client.get("/gone.png", headers={"Referer": REFERER}).status_code == 404

    def test_referer_for_unknown_archive(self, client):
        r = client.get("/logo.png", headers={"Referer": "http://localhost:3000/view/nope_1/"})
        assert r.status_code == 404


class TestDownload:
    def test_zip_contains_archive_tree(self, client):
        r = client.get(f"/download/{ARCHIVE_ID}")
        assert r.status_code == 200
        assert f"{ARCHIVE_ID}.zip" in r.headers["Content-Disposition"]
        with zipfile.ZipFile(io.BytesIO(r.data)) as zf:
            names = set(zf.namelist())
            assert {"index.html", "urlMap.json", "metadata.json", "assets/media/logo_1.png"} <= names
            assert zf.read("assets/media/logo_1.png") == b"LOGO"

    def test_zip_is_streamed(self, client):
        r = client.get(f"/download/{ARCHIVE_ID}", buffered=False)
        assert r.is_streamed
        with zipfile.ZipFile(io.BytesIO(r.get_data())) as zf:
            assert zf.getinfo("index.html").compress_type == zipfile.ZIP_DEFLATED
        r.close()

    def test_unknown_archive(self, client):
        assert client.get("/download/nope_1").status_code == 404


def test_archive_listing_newest_first(client):
    data = client.get("/api/archives").get_json()
    assert [a["id"] for a in data] == [ARCHIVE_ID, "older_1600000000000"]
    assert data[0]["title"] == "Example"
    assert data[1]["title"] == "older_1600000000000"


def test_match_request_without_index(tmp_path):
    assert match_request(tmp_path, "/logo.png") is None


@pytest.mark.parametrize(
    "referer,expected",
    [
        (REFERER, ARCHIVE_ID),
        (f"http://localhost:3000/view/{ARCHIVE_ID}", ARCHIVE_ID),
        ("http://localhost:3000/", None),
        (None, None),
    ],
)
def test_archive_id_from_referer(referer, expected):
    assert archive_id_from_referer(referer) == expected


def test_iter_zip_yields_chunks_for_large_files(tmp_path):
    payload = os.urandom(300 * 1024)
    (tmp_path / "assets").mkdir()
    (tmp_path / "assets" / "big.bin").write_bytes(payload)
    (tmp_path / "index.html").write_text("<p>x</p>", encoding="utf-8")
    chunks = list(iter_zip(tmp_path))
    assert len([c for c in chunks if c]) > 1
    with zipfile.ZipFile(io.BytesIO(b"".join(chunks))) as zf:
        assert zf.read("assets/big.bin") == payload
        assert zf.read("index.html") == b"<p>x</p>"
