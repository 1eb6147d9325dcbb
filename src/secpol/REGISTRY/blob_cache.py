# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Local content-addressable cache for registry blobs.
Lets repeated compilations skip downloading layers they already verified.
"""

import os
import shutil
import tempfile
from typing import Optional
from pathlib import Path


class BlobCache:
    """
    Stores blobs by digest under <cache_dir>/blobs/<algorithm>_<hex>.
    Only blobs whose digest was verified on download are added.
    """

    def __init__(self, cache_dir: str):
        """
        Initialize the blob cache.

        Args:
            cache_dir: Directory for cache storage; created if missing.
        """
        self.cache_dir = Path(cache_dir)
        self.blobs_dir = self.cache_dir / "blobs"
        self.blobs_dir.mkdir(parents=True, exist_ok=True)

    def _blob_path(self, digest: str) -> Path:
        return self.blobs_dir / digest.replace(":", "_")

    def has_blob(self, digest: str) -> bool:
        """Check if a blob is cached."""
        return self._blob_path(digest).exists()

    def get_blob_path(self, digest: str) -> Optional[Path]:
        """Get the path to a cached blob."""
        path = self._blob_path(digest)
        return path if path.exists() else None

    def add_blob(self, digest: str, source: Path) -> Path:
        """
        Copy a verified blob file into the cache.

        Args:
            digest: Verified digest of the file content
            source: Temporary file holding the blob

        Returns:
            Path to the cached blob
        """
        path = self._blob_path(digest)
        fd, tmp_name = tempfile.mkstemp(dir=self.blobs_dir, suffix=".partial")
        os.close(fd)
        shutil.copyfile(source, tmp_name)
        os.replace(tmp_name, path)
        return path
