"""
OCI distribution registry client.

Resolves tags with `HEAD /v2/<repository>/manifests/<tag>`; the digest a tag
points at comes back in the `Docker-Content-Digest` header.
"""

from __future__ import annotations

import logging

from converge.errors import ProviderError

from .http import HttpCollaborator

logger = logging.getLogger(__name__)

MANIFEST_MEDIA_TYPES = ", ".join(
    [
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    ]
)


class OCIRegistryClient(HttpCollaborator):
    """Artifact registry backed by an OCI distribution API."""

    provider_name = "oci-registry"
    health_path = "/v2/"

    def _default_headers(self) -> dict[str, str]:
        return {"Accept": MANIFEST_MEDIA_TYPES}

    async def resolve_tag(self, repository: str, tag: str) -> str | None:
        response = await self._request(
            "HEAD", f"/v2/{repository}/manifests/{tag}", allow=(404,)
        )
        if response.status_code == 404:
            return None
        digest = response.headers.get("Docker-Content-Digest")
        if not digest:
            raise ProviderError(
                f"No digest returned for {repository}:{tag}",
                self.name,
                status_code=response.status_code,
            )
        return digest

    async def has_artifact(self, repository: str, tag: str) -> bool:
        return await self.resolve_tag(repository, tag) is not None
