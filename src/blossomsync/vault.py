import hashlib
import os
import re
import tempfile
from pathlib import Path
from typing import List, Optional, Set, Tuple, Union

from loguru import logger

from .blob import Blob
from .content import guess_mime_type
from .errors import DataIntegrityError

HASH_RE = re.compile(r"^[0-9a-f]{64}$")


def _hash_of(name: str) -> Optional[str]:
    candidate = name.split(".", 1)[0].lower()
    return candidate if HASH_RE.match(candidate) else None


class BlobVault:
    """
    Durable on-device copies of blobs, stored as `<sha256>.<ext>`.
    The set of vaulted hashes is always re-derived from the directory.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _files(self):
        for path in self.root.iterdir():
            if path.is_file() and not path.name.startswith(".") and _hash_of(path.name):
                yield path

    def vaulted_hashes(self) -> Set[str]:
        return {_hash_of(p.name) for p in self._files()}

    def contains(self, sha256: str) -> bool:
        return self.find(sha256) is not None

    def find(self, sha256: str) -> Optional[Path]:
        sha256 = sha256.lower()
        for path in self._files():
            if _hash_of(path.name) == sha256:
                return path
        return None

    def path_for(self, sha256: str, extension: str = "") -> Path:
        extension = extension.lstrip(".")
        return self.root / (f"{sha256}.{extension}" if extension else sha256)

    def save_bytes(self, sha256: str, data: bytes, extension: str = "") -> Path:
        """Write verified bytes with an atomic rename."""
        actual = hashlib.sha256(data).hexdigest()
        if actual != sha256:
            raise DataIntegrityError(f"Vault copy of {sha256} hashes to {actual}")

        target = self.path_for(sha256, extension)
        fd, tmp = tempfile.mkstemp(prefix=".vault_", dir=self.root)
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
            os.replace(tmp, target)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.debug(f"Vaulted {sha256} ({len(data)} bytes)")
        return target

    def save_file(self, sha256: str, source: Union[str, Path], extension: str = "") -> Path:
        with open(source, 'rb') as f:
            data = f.read()
        return self.save_bytes(sha256, data, extension)

    def delete(self, sha256: str) -> bool:
        path = self.find(sha256)
        if path is None:
            return False
        path.unlink()
        logger.info(f"Removed {sha256} from vault")
        return True

    def clear(self) -> int:
        count = 0
        for path in list(self._files()):
            path.unlink()
            count += 1
        return count

    def stats(self) -> Tuple[int, int]:
        """(file count, total bytes)"""
        files = list(self._files())
        return len(files), sum(p.stat().st_size for p in files)

    def scan_blobs(self) -> List[Blob]:
        """Rebuild vault-only records from the files on disk."""
        blobs = []
        for path in self._files():
            stat = path.stat()
            blobs.append(Blob(
                sha256=_hash_of(path.name),
                url=path.resolve().as_uri(),
                size=stat.st_size,
                mime_type=guess_mime_type(path),
                server_url=None,
                created=int(stat.st_mtime),
            ))
        return blobs


class DiskCache:
    """Read-only directory of previously downloaded files named by hash."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def get(self, sha256: str) -> Optional[bytes]:
        if not self.root.is_dir():
            return None
        for path in self.root.iterdir():
            if path.is_file() and _hash_of(path.name) == sha256:
                with open(path, 'rb') as f:
                    return f.read()
        return None
