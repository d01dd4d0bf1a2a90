"""
Archive extraction for downloaded packages.

Deken ships ``.dek`` files, which are zip archives; older uploads are
``.zip`` or ``.tar.gz``.  The format is sniffed from the bytes, not
the file name.
"""

from __future__ import annotations

import io
import logging
import tarfile
import zipfile
from pathlib import Path

from deken.core.errors import ArchiveCorrupt

logger = logging.getLogger(__name__)


def extract_archive(data: bytes, target_dir: Path) -> list[str]:
    """Extract an in-memory archive into ``target_dir``.

    Returns:
        Member names that were extracted.

    Raises:
        ArchiveCorrupt: If the data is not a readable zip or tar archive,
            or extraction fails part-way.  Files already written are
            left in place.
    """
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ArchiveCorrupt(f"Cannot create {target_dir}: {e}") from e

    buffer = io.BytesIO(data)
    try:
        if zipfile.is_zipfile(buffer):
            buffer.seek(0)
            with zipfile.ZipFile(buffer) as zf:
                names = zf.namelist()
                zf.extractall(target_dir)
        else:
            buffer.seek(0)
            with tarfile.open(fileobj=buffer, mode="r:*") as tf:
                names = tf.getnames()
                tf.extractall(target_dir, filter="data")
    except (zipfile.BadZipFile, tarfile.TarError, OSError, EOFError) as e:
        raise ArchiveCorrupt(f"Cannot extract archive into {target_dir}: {e}") from e

    logger.debug("Extracted %d members into %s", len(names), target_dir)
    return names
