# docparser/services/rasterizer.py
from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import tempfile
from typing import List, Optional

from docparser.shared.errors import RasterError

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 10
_PAGE_RE = re.compile(r"^page-0*(\d+)\.jpg$")


class RasterizedPages:
    """
    Page JPEGs of one PDF, in page order. Owns the temp directory; use it
    as an async context manager so the directory is removed on every exit path.
    """

    def __init__(self, workdir: str, paths: List[str]):
        self.workdir = workdir
        self.paths = paths

    def __len__(self) -> int:
        return len(self.paths)

    def __iter__(self):
        return iter(self.paths)

    def cleanup(self) -> None:
        shutil.rmtree(self.workdir, ignore_errors=True)

    async def __aenter__(self) -> "RasterizedPages":
        return self

    async def __aexit__(self, *exc) -> None:
        self.cleanup()


def _collect_pages(workdir: str) -> List[str]:
    found = []
    for name in os.listdir(workdir):
        m = _PAGE_RE.match(name)
        if m:
            found.append((int(m.group(1)), os.path.join(workdir, name)))
    return [p for _, p in sorted(found)]


class Rasterizer:
    def __init__(self, binary: str = "pdftoppm"):
        self.binary = binary

    async def rasterize(self, pdf_path: str, max_pages: Optional[int] = None) -> RasterizedPages:
        """
        `pdftoppm -jpeg -f 1 -l <max_pages> <pdf> <workdir>/page`.
        Raises RasterError when the tool is missing, exits non-zero or yields nothing.
        """
        if not max_pages or max_pages <= 0:
            max_pages = DEFAULT_MAX_PAGES

        workdir = tempfile.mkdtemp(prefix="docparser-pdf-")
        try:
            prefix = os.path.join(workdir, "page")
            try:
                proc = await asyncio.create_subprocess_exec(
                    self.binary, "-jpeg", "-f", "1", "-l", str(max_pages), pdf_path, prefix,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as e:
                raise RasterError(f"rasterizer binary '{self.binary}' not found", e) from e

            try:
                _, stderr = await proc.communicate()
            except asyncio.CancelledError:
                if proc.returncode is None:
                    proc.kill()
                    await proc.wait()
                raise

            if proc.returncode != 0:
                msg = (stderr or b"").decode("utf-8", "replace").strip()
                raise RasterError(f"{self.binary} exited with {proc.returncode}: {msg}")

            paths = _collect_pages(workdir)
            if not paths:
                raise RasterError("rasterizer produced no pages")

            logger.info("rasterized %d page(s) from %s", len(paths), pdf_path)
            return RasterizedPages(workdir, paths)
        except BaseException:
            shutil.rmtree(workdir, ignore_errors=True)
            raise
