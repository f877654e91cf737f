#!/usr/bin/env python3
import argparse
import json
import logging
import os
import re
import zipfile
from pathlib import Path
from typing import Iterator, List, Optional, Union
from urllib.parse import quote

from flask import Flask, Response, abort, jsonify, request, send_file, send_from_directory
from werkzeug.exceptions import NotFound

from web_archiver import (
    METADATA_FILE,
    SERVER_TIERS,
    URL_MAP_FILE,
    ArchiveError,
    ResolutionIndex,
    resolve,
)

REFERER_ARCHIVE_RE = re.compile(r"/view/([^/?#]+)")
ARCHIVE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
ZIP_COMPRESS_LEVEL = 5
ZIP_CHUNK_SIZE = 64 * 1024
# Characters left literal when re-encoding a decoded request path.
PATH_SAFE_CHARS = "/:@!$&'()*+,;=-._~"


def archive_timestamp(folder: str) -> int:
    try:
        return int(folder.rsplit("_", 1)[-1])
    except ValueError:
        return 0


def read_metadata(archive_dir: Path) -> dict:
    try:
        meta = json.loads((archive_dir / METADATA_FILE).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        meta = {}
    if not isinstance(meta, dict):
        meta = {}
    meta.setdefault("id", archive_dir.name)
    meta["title"] = meta.get("title") or archive_dir.name
    return meta


def list_archives(archives_dir: Path) -> List[dict]:
    if not archives_dir.is_dir():
        return []
    folders = [p for p in archives_dir.iterdir() if p.is_dir()]
    folders.sort(key=lambda p: archive_timestamp(p.name), reverse=True)
    return [read_metadata(p) for p in folders]


def archive_dir_for(archives_dir: Path, archive_id: str) -> Optional[Path]:
    if not ARCHIVE_ID_RE.match(archive_id or ""):
        return None
    p = archives_dir / archive_id
    return p if p.is_dir() else None


def archive_id_from_referer(referer: Optional[str]) -> Optional[str]:
    if not referer:
        return None
    m = REFERER_ARCHIVE_RE.search(referer)
    return m.group(1) if m else None


def match_request(archive_dir: Path, request_path: str, query: str = "") -> Optional[Path]:
    try:
        index = ResolutionIndex.load(archive_dir / URL_MAP_FILE)
    except (OSError, ValueError, ArchiveError) as e:
        logging.debug("no usable index in %s: %s", archive_dir, e)
        return None
    origin = read_metadata(archive_dir).get("originalUrl", "")
    # Index keys keep their escapes; the routed path arrives decoded.
    path = quote(request_path, safe=PATH_SAFE_CHARS)
    reference = f"{path}?{query}" if query else path
    local = resolve(reference, index, origin, SERVER_TIERS)
    if local is None:
        return None
    root = archive_dir.resolve()
    target = (root / local).resolve()
    if root not in target.parents or not target.is_file():
        return None
    return target


class ZipChunks:
    """Write-only, unseekable sink; zipfile falls back to data descriptors."""

    def __init__(self):
        self._chunks: List[bytes] = []

    def write(self, data) -> int:
        self._chunks.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def drain(self) -> bytes:
        out = b"".join(self._chunks)
        self._chunks.clear()
        return out


def iter_zip(archive_dir: Path) -> Iterator[bytes]:
    sink = ZipChunks()
    with zipfile.ZipFile(
        sink, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=ZIP_COMPRESS_LEVEL
    ) as zf:
        for path in sorted(archive_dir.rglob("*")):
            if not path.is_file():
                continue
            arcname = path.relative_to(archive_dir).as_posix()
            large = path.stat().st_size >= zipfile.ZIP64_LIMIT
            with path.open("rb") as src, zf.open(arcname, "w", force_zip64=large) as dst:
                while True:
                    chunk = src.read(ZIP_CHUNK_SIZE)
                    if not chunk:
                        break
                    dst.write(chunk)
                    data = sink.drain()
                    if data:
                        yield data
            data = sink.drain()
            if data:
                yield data
    yield sink.drain()


def create_app(archives_dir: Union[str, Path]) -> Flask:
    app = Flask(__name__)
    root = Path(archives_dir).resolve()
    root.mkdir(parents=True, exist_ok=True)
    app.config["ARCHIVES_DIR"] = root

    def fallback(archive_id: Optional[str], request_path: str):
        archive_dir = archive_dir_for(root, archive_id) if archive_id else None
        if archive_dir is not None:
            target = match_request(archive_dir, request_path, request.query_string.decode("utf-8", "ignore"))
            if target is not None:
                logging.debug("fallback %s -> %s", request.full_path, target)
                return send_file(target)
        logging.info("not found in archive: %s", request.full_path)
        return "Not Found in Archive", 404

    @app.get("/api/archives")
    def archives():
        return jsonify(list_archives(root))

    @app.get("/download/<archive_id>")
    def download(archive_id: str):
        archive_dir = archive_dir_for(root, archive_id)
        if archive_dir is None:
            abort(404, description="Archive not found")
        logging.info("streaming archive %s", archive_id)
        return Response(
            iter_zip(archive_dir),
            mimetype="application/zip",
            headers={"Content-Disposition": f"attachment; filename={archive_id}.zip"},
        )

    @app.get("/view/<archive_id>/")
    @app.get("/view/<archive_id>/<path:subpath>")
    def view(archive_id: str, subpath: str = "index.html"):
        archive_dir = archive_dir_for(root, archive_id)
        if archive_dir is None:
            abort(404, description="Archive not found")
        try:
            return send_from_directory(archive_dir, subpath)
        except NotFound:
            return fallback(archive_id, "/" + subpath)

    @app.route("/<path:subpath>")
    def catch_all(subpath: str):
        return fallback(archive_id_from_referer(request.headers.get("Referer")), request.path)

    return app


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Serve captured archives for offline replay.")
    p.add_argument(
        "--archives-dir",
        default=os.environ.get("ARCHIVES_DIR", "archives"),
        help="archive root directory",
    )
    p.add_argument(
        "--port", type=int, default=int(os.environ.get("PORT", "3000")), help="listen port"
    )
    p.add_argument("--host", default="127.0.0.1", help="listen address")
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    app = create_app(args.archives_dir)
    logging.info("replay server running at http://%s:%d", args.host, args.port)
    app.run(host=args.host, port=args.port)


if __name__ == "__main__":
    main()
