from frea.clients.changes import ChangesFeed
from frea.clients.http import make_client
from frea.clients.registry import HttpArtifactSource, RegistryResolver, build_manifest

__all__ = [
    "ChangesFeed",
    "HttpArtifactSource",
    "RegistryResolver",
    "build_manifest",
    "make_client",
]
