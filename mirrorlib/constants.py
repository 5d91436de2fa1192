GITHUB_API_URL = "https://api.github.com"
GITHUB_TOKEN = "GITHUB_TOKEN"
GITLAB_TOKEN = "GITLAB_TOKEN"
REGISTRY_TOKEN = "REGISTRY_TOKEN"

DEFAULT_REGISTRY = "ghcr.io"
DEFAULT_WINDOW_SIZE = 10
DEFAULT_FETCH_SIZE = 30

# GitHub caps per_page for the releases API at 100
GITHUB_MAX_PAGE_SIZE = 100

KNOWN_ARCHES = ["amd64", "arm64"]
DEFAULT_RUNNERS = {
    "amd64": "ubuntu-24.04",
    "arm64": "ubuntu-24.04-arm",
}
DEFAULT_QEMU_RUNNER = "ubuntu-24.04"

LATEST_TAG = "latest"

# Media types accepted when probing the registry for a tag
MANIFEST_MEDIA_TYPES = [
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
]
INDEX_MEDIA_TYPES = {
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
}

# how long we wait for a single image build before giving up on it
BUILD_TIMEOUT = 3 * 60 * 60
