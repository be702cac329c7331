"""Seed a running upload server with real sample files through the chunked API."""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import Optional, Sequence

import requests

from pats_cloud.clients.upload_clients import DEFAULT_CHUNK_SIZE, ChunkedUploader

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_DATA_DIR = REPO_ROOT / "sample_data"


def _discover_files(data_dir: Path) -> list[Path]:
    if not data_dir.exists():
        raise FileNotFoundError(f"Sample data directory not found: {data_dir}")
    return [path for path in sorted(data_dir.rglob("*")) if path.is_file() and path.stat().st_size > 0]


def _create_folder(session: requests.Session, base_url: str, name: str) -> str:
    resp = session.post(f"{base_url.rstrip('/')}/api/folders", json={"name": name}, timeout=30)
    resp.raise_for_status()
    return resp.json()["name"]


def seed(
    base_url: str,
    data_files: Sequence[Path],
    password: Optional[str],
    chunk_size: int,
    env_label: str,
) -> None:
    session = requests.Session()
    folder_name: Optional[str] = None
    for path in data_files:
        uploader = ChunkedUploader(
            base_url=base_url,
            file_path=path,
            chunk_size=chunk_size,
            folder=folder_name,
            password=password,
            http_client=session,
        )
        if folder_name is None:
            # First upload logs the shared session in.
            uploader.ensure_login()
            folder_name = _create_folder(session, base_url, f"{env_label}-seed")
            uploader.folder = folder_name
            print(f"Created folder {folder_name}")
        print(f"Uploading {path.name} ({path.stat().st_size} bytes)")
        result = uploader.upload()
        stored = result.get("file", {})
        print(f" -> stored as {stored.get('name')} ({stored.get('size')} bytes)")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed Pats Cloud demo data")
    parser.add_argument("--env", default="local", help="Label used in folder naming")
    parser.add_argument("--base-url", default=os.environ.get("PATS_CLOUD_URL", "http://localhost:3000"), help="Server base URL")
    parser.add_argument("--data-dir", type=Path, default=DEFAULT_DATA_DIR, help="Directory of sample files")
    parser.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE, help="Chunk size in bytes")
    return parser.parse_args()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(levelname)s %(message)s")
    args = parse_args()
    files = _discover_files(args.data_dir)
    if not files:
        raise SystemExit(f"No files found in {args.data_dir}")

    seed(args.base_url, files, os.environ.get("APP_PASSWORD"), args.chunk_size, args.env)


if __name__ == "__main__":
    main()
