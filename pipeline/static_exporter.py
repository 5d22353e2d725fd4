"""
Static Exporter for the Game Leadership Map.

Writes the map feeds to static JSON so the front end can run without a
server.

Output files:
- public/data/markers.json           - Institutions with papers (research layer)
- public/data/community-markers.json - Approved community submissions

Usage:
    python -m pipeline.static_exporter
    python -m pipeline.static_exporter --output dist/data --no-gzip
"""

import argparse
import gzip
import json
import shutil
from contextlib import nullcontext
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from sqlalchemy.orm import Session

from pipeline.config import settings
from pipeline.database import get_session
from pipeline.directory import community_markers, institution_markers


def save_json(path: Path, data: Any, compress: bool = True) -> int:
    """Save data as compact JSON, optionally with a gzip copy. Returns bytes written."""
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, separators=(",", ":"), ensure_ascii=False)

    size = path.stat().st_size
    logger.info(f"  Saved {path.name}: {size / 1024:.1f} KB")

    if compress:
        gz_path = path.with_suffix(path.suffix + ".gz")
        with open(path, "rb") as f_in:
            with gzip.open(gz_path, "wb", compresslevel=9) as f_out:
                shutil.copyfileobj(f_in, f_out)
        logger.info(f"  Saved {gz_path.name}: {gz_path.stat().st_size / 1024:.1f} KB (gzip)")

    return size


class StaticExporter:
    """Exports the marker feeds to static JSON files."""

    def __init__(self, output_dir: Optional[Path] = None, session: Optional[Session] = None, compress: bool = True):
        self.output_dir = Path(output_dir or settings.pipeline.export_dir)
        self.session = session
        self.compress = compress
        self.stats: dict[str, int] = {}

    def _session(self):
        return nullcontext(self.session) if self.session is not None else get_session()

    def export_all(self) -> dict[str, int]:
        logger.info("=" * 60)
        logger.info("STATIC EXPORT - Game Leadership Map")
        logger.info("=" * 60)
        logger.info(f"Output directory: {self.output_dir}")

        self.output_dir.mkdir(parents=True, exist_ok=True)

        with self._session() as session:
            self._export_markers(session)
            self._export_community_markers(session)

        self._export_manifest()
        self._print_summary()
        return self.stats

    def _export_markers(self, session: Session):
        logger.info("Exporting markers.json...")
        markers = institution_markers(session)
        save_json(self.output_dir / "markers.json", markers, self.compress)
        self.stats["markers"] = len(markers)
        self.stats["papers_on_map"] = sum(m["paper_count"] for m in markers)

    def _export_community_markers(self, session: Session):
        logger.info("Exporting community-markers.json...")
        markers = community_markers(session)
        save_json(self.output_dir / "community-markers.json", markers, self.compress)
        self.stats["community_markers"] = len(markers)
        self.stats["community_leaders"] = sum(len(m["leaders"]) for m in markers)

    def _export_manifest(self):
        manifest = {
            "generated_at": datetime.utcnow().isoformat(),
            "counts": dict(self.stats),
        }
        save_json(self.output_dir / "manifest.json", manifest, compress=False)

    def _print_summary(self):
        logger.info("=" * 60)
        logger.info("EXPORT SUMMARY")
        logger.info("=" * 60)
        for key, value in sorted(self.stats.items()):
            logger.info(f"  {key}: {value:,}")


def build_static(output_dir: Optional[str] = None, compress: bool = True) -> dict[str, int]:
    """Build static files for deployment."""
    exporter = StaticExporter(Path(output_dir) if output_dir else None, compress=compress)
    return exporter.export_all()


def main():
    parser = argparse.ArgumentParser(description="Export map feeds to static JSON files")
    parser.add_argument("--output", "-o", help="Output directory", default=None)
    parser.add_argument("--no-gzip", action="store_true", help="Skip gzip compression")
    args = parser.parse_args()

    build_static(output_dir=args.output, compress=not args.no_gzip)


if __name__ == "__main__":
    main()
