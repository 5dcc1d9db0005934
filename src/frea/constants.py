from __future__ import annotations

# bus topics
CHANGE_IDS_TOPIC = "change-ids"
ARTIFACT_TASKS_TOPIC = "artifact-tasks"

# upstream endpoints
DEFAULT_CHANGES_URL = "https://replicate.npmjs.com/registry"
DEFAULT_REGISTRY_URL = "https://registry.npmjs.org"

# stored object content types
TARBALL_CONTENT_TYPE = "application/gzip"
MANIFEST_CONTENT_TYPE = "application/json"
