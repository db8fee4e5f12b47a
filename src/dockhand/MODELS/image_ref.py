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
Image reference parsing and handling.
Parses references like 'nginx', 'nginx:1.25' or 'localhost:5000/team/app:v1'
into the (name, tag) pair that identifies an image.
"""

from typing import Optional
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ImageRef:
    """
    Identity of an image: a (name, tag) pair, unique together.

    Examples:
        - nginx -> nginx:latest
        - nginx:1.25 -> nginx:1.25
        - localhost:5000/team/app -> localhost:5000/team/app:latest
        - ghcr.io/org/tool@sha256:abc... -> ghcr.io/org/tool:latest (digest kept aside)
    """

    name: str
    tag: str = "latest"
    digest: Optional[str] = field(default=None, compare=False, hash=False)

    DEFAULT_TAG = "latest"

    def __post_init__(self):
        if not self.name:
            raise ValueError("Image name must not be empty")
        if not self.tag:
            raise ValueError(f"Image {self.name} has an empty tag")

    @classmethod
    def parse(cls, reference: str) -> "ImageRef":
        """
        Parse an image reference string.

        Args:
            reference: Image reference string (e.g., 'nginx:latest', 'myuser/myimage:v1')

        Returns:
            Parsed ImageRef object.
        """
        if not reference or not reference.strip():
            raise ValueError("Empty image reference")
        reference = reference.strip()

        digest = None
        if "@" in reference:
            reference, digest = reference.rsplit("@", 1)

        tag = None
        if ":" in reference:
            last_colon = reference.rfind(":")
            after_colon = reference[last_colon + 1 :]

            # A slash after the colon means it belongs to a registry host:port
            if "/" not in after_colon:
                tag = after_colon
                reference = reference[:last_colon]

        return cls(name=reference, tag=tag or cls.DEFAULT_TAG, digest=digest)

    @property
    def key(self) -> str:
        """Canonical string key used by the store and the engine."""
        return f"{self.name}:{self.tag}"

    def __str__(self) -> str:
        return self.key

    def __repr__(self) -> str:
        return f"ImageRef({self.key})"
