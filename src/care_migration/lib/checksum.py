"""
Content digests for backup artifacts.

MD5 and SHA-256 are computed together in a single streaming pass so large
artifacts never need to be held in memory.
"""

import hashlib
from pathlib import Path
from typing import Dict, Union

CHUNK_SIZE = 1024 * 1024  # 1 MB


def file_checksums(path: Union[str, Path], chunk_size: int = CHUNK_SIZE) -> Dict[str, str]:
    """
    Compute MD5 and SHA-256 hex digests of a file

    Args:
        path: File to digest
        chunk_size: Read size per iteration

    Returns:
        ``{'md5': ..., 'sha256': ...}``
    """
    md5_hash = hashlib.md5()
    sha256_hash = hashlib.sha256()

    with open(path, 'rb') as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b''):
            md5_hash.update(chunk)
            sha256_hash.update(chunk)

    return {
        'md5': md5_hash.hexdigest(),
        'sha256': sha256_hash.hexdigest(),
    }


def checksums_match(expected: Dict[str, str], actual: Dict[str, str]) -> bool:
    """True when every expected digest is present and equal in ``actual``"""
    if not expected:
        return False
    return all(actual.get(name) == value for name, value in expected.items())
