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
Local store of assembled images and the tags that name them.
An image lives as long as at least one tag points at it.
"""

import io
import json
import logging
import os
import shutil
import tarfile
import threading
from pathlib import Path
from typing import Dict, List, Optional, Any

from ..MODELS.container_image import Image
from .image_reference import ImageReference

logger = logging.getLogger(__name__)


class ImageStore:
    """
    Keeps image metadata, layer blobs and the tag index under one directory.
    """

    def __init__(self, store_dir: str):
        """
        Initialize the image store.

        Args:
            store_dir: Directory for image storage.
        """
        self.store_dir = Path(store_dir)
        self.blobs_dir = self.store_dir / "blobs"
        self.index_file = self.store_dir / "index.json"
        self.blobs_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._index = self._load_index()

    def _load_index(self) -> Dict[str, Any]:
        """Load the store index from disk."""
        if self.index_file.exists():
            with open(self.index_file, 'r') as f:
                return json.load(f)
        return {"images": {}, "tags": {}}

    def _save_index(self) -> None:
        tmp = self.index_file.with_suffix(".tmp")
        with open(tmp, 'w') as f:
            json.dump(self._index, f, indent=2)
        os.replace(tmp, self.index_file)

    def _blob_path(self, digest: str) -> Path:
        return self.blobs_dir / digest.replace(":", "_")

    def add(self, image: Image, layers: Dict[str, bytes]) -> Image:
        """
        Stores an image and its layer blobs. Adding the same digest again is a no-op.

        Args:
            image: The assembled image.
            layers: Layer archives keyed by digest.
        """
        with self._lock:
            for digest in image.layers:
                path = self._blob_path(digest)
                if not path.exists():
                    with open(path, 'wb') as f:
                        f.write(layers[digest])
            if image.digest not in self._index["images"]:
                self._index["images"][image.digest] = image.model_dump(mode="json")
                self._save_index()
        return image

    def tag(self, image: Image, reference: str, aliases: Optional[List[str]] = None) -> List[str]:
        """
        Points ``reference`` and every alias tag at ``image``. A tag that
        pointed elsewhere moves; the image it left is dropped if now untagged.

        Args:
            image: A stored image.
            reference: Primary reference, e.g. ``api:1.4``.
            aliases: Extra tags on the same repository, e.g. ``["latest"]``.

        Returns:
            The full names that now point at the image.
        """
        ref = ImageReference.parse(reference)
        names = [ref.full_name] + [ref.with_tag(a).full_name for a in (aliases or []) if a != ref.tag]
        with self._lock:
            if image.digest not in self._index["images"]:
                raise KeyError(f"Image {image.short_id} is not in the store")
            displaced = set()
            for name in names:
                previous = self._index["tags"].get(name)
                if previous and previous != image.digest:
                    displaced.add(previous)
                self._index["tags"][name] = image.digest
            for digest in displaced:
                self._drop_if_untagged(digest)
            self._save_index()
        logger.info("Tagged %s as %s", image.short_id, ", ".join(names))
        return names

    def get(self, reference: str) -> Optional[Image]:
        """
        Look an image up by reference or digest.
        """
        with self._lock:
            if reference.startswith("sha256:"):
                digest = reference
            else:
                digest = self._index["tags"].get(ImageReference.parse(reference).full_name)
            data = self._index["images"].get(digest) if digest else None
        return Image(**data) if data else None

    def tags_of(self, digest: str) -> List[str]:
        with self._lock:
            return sorted(t for t, d in self._index["tags"].items() if d == digest)

    def list(self) -> List[Image]:
        with self._lock:
            return [Image(**data) for data in self._index["images"].values()]

    def remove_tag(self, reference: str) -> bool:
        """
        Deletes a tag. The image is removed with its last tag.

        Returns:
            True if the tag existed.
        """
        name = ImageReference.parse(reference).full_name
        with self._lock:
            digest = self._index["tags"].pop(name, None)
            if digest is None:
                return False
            self._drop_if_untagged(digest)
            self._save_index()
        return True

    def _drop_if_untagged(self, digest: str) -> None:
        if digest in self._index["tags"].values():
            return
        data = self._index["images"].pop(digest, None)
        if not data:
            return
        still_used = {l for img in self._index["images"].values() for l in img["layers"]}
        for layer in data["layers"]:
            if layer not in still_used:
                path = self._blob_path(layer)
                if path.exists():
                    path.unlink()
        logger.info("Removed untagged image %s", digest)

    def extract(self, image: Image, dest: str) -> str:
        """
        Materialises an image's layers into ``dest`` for an instance to run from.
        Any previous content of ``dest`` is replaced.
        """
        if os.path.exists(dest):
            shutil.rmtree(dest)
        os.makedirs(dest)
        for digest in image.layers:
            with open(self._blob_path(digest), 'rb') as f:
                data = f.read()
            with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
                tar.extractall(dest, filter="data")
        return dest
