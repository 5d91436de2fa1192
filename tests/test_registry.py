import base64
from unittest import IsolatedAsyncioTestCase
from unittest.mock import AsyncMock, MagicMock

import aiohttp
from tenacity import wait_none

from mirrorlib.exceptions import RegistryProbeIndeterminate
from mirrorlib.registry import ABSENT, RegistryInspector, TagPresence

AMD64_DIGEST = "sha256:" + "a" * 64
ARM64_DIGEST = "sha256:" + "b" * 64
CONFIG_DIGEST = "sha256:" + "c" * 64
ATTESTATION_DIGEST = "sha256:" + "d" * 64


def response(status=200, payload=None, digest=None):
    resp = MagicMock(status=status)
    resp.headers = {"Docker-Content-Digest": digest} if digest else {}
    resp.json = AsyncMock(return_value=payload)
    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=resp)
    cm.__aexit__ = AsyncMock(return_value=False)
    return cm


INDEX = {
    "mediaType": "application/vnd.oci.image.index.v1+json",
    "manifests": [
        {"digest": AMD64_DIGEST, "platform": {"os": "linux", "architecture": "amd64"}},
        {"digest": ARM64_DIGEST, "platform": {"os": "linux", "architecture": "arm64", "variant": "v8"}},
        {"digest": ATTESTATION_DIGEST, "platform": {"os": "unknown", "architecture": "unknown"}},
    ],
}


class TestRegistryInspector(IsolatedAsyncioTestCase):

    def inspector(self, session, token=None):
        return RegistryInspector(session, registry="ghcr.io", token=token, retries=3, retry_wait=wait_none())

    def test_auth_header(self):
        headers = self.inspector(MagicMock(), token="ghp_secret")._headers()
        self.assertEqual(headers["Authorization"], "Bearer " + base64.b64encode(b"ghp_secret").decode())
        self.assertNotIn("Authorization", self.inspector(MagicMock())._headers())

    async def test_exists(self):
        session = MagicMock()
        session.request.return_value = response(200, digest=AMD64_DIGEST)
        self.assertTrue(await self.inspector(session).exists("acme/mirror/outline", "0.82.0"))
        method, url = session.request.call_args[0]
        self.assertEqual(method, "HEAD")
        self.assertEqual(url, "https://ghcr.io/v2/acme/mirror/outline/manifests/0.82.0")

        session.request.return_value = response(404)
        self.assertFalse(await self.inspector(session).exists("acme/mirror/outline", "0.82.0"))

    async def test_auth_failure_is_indeterminate(self):
        session = MagicMock()
        session.request.return_value = response(401)
        with self.assertRaises(RegistryProbeIndeterminate) as cm:
            await self.inspector(session).exists("acme/mirror/outline", "0.82.0")
        self.assertEqual(cm.exception.status, 401)
        self.assertEqual(cm.exception.tags, ["0.82.0"])
        self.assertEqual(session.request.call_count, 1)

    async def test_server_errors_retried_then_indeterminate(self):
        session = MagicMock()
        session.request.return_value = response(503)
        with self.assertRaises(RegistryProbeIndeterminate) as cm:
            await self.inspector(session).exists("acme/mirror/outline", "0.82.0")
        self.assertEqual(cm.exception.status, 503)
        self.assertEqual(session.request.call_count, 3)

    async def test_network_error_is_indeterminate(self):
        session = MagicMock()
        session.request.side_effect = aiohttp.ClientConnectionError("reset")
        with self.assertRaises(RegistryProbeIndeterminate):
            await self.inspector(session).exists("acme/mirror/outline", "0.82.0")

    async def test_inspect_index(self):
        session = MagicMock()
        session.request.return_value = response(200, payload=INDEX)
        presence = await self.inspector(session).inspect_architectures("acme/mirror/outline", "0.82.0")
        self.assertTrue(presence.exists)
        self.assertEqual(presence.digests, {"amd64": AMD64_DIGEST, "arm64": ARM64_DIGEST})
        self.assertTrue(presence.has_arch("arm64"))

    async def test_inspect_single_arch_manifest(self):
        session = MagicMock()
        session.request.side_effect = [
            response(200, payload={"mediaType": "application/vnd.oci.image.manifest.v1+json",
                                   "config": {"digest": CONFIG_DIGEST}}, digest=AMD64_DIGEST),
            response(200, payload={"os": "linux", "architecture": "amd64"}),
        ]
        presence = await self.inspector(session).inspect_architectures("acme/mirror/outline", "0.82.0")
        self.assertEqual(presence, TagPresence(True, {"amd64": AMD64_DIGEST}))
        self.assertFalse(presence.has_arch("arm64"))
        self.assertEqual(session.request.call_args[0][1], f"https://ghcr.io/v2/acme/mirror/outline/blobs/{CONFIG_DIGEST}")

    async def test_inspect_absent(self):
        session = MagicMock()
        session.request.return_value = response(404)
        presence = await self.inspector(session).inspect_architectures("acme/mirror/outline", "0.82.0")
        self.assertIs(presence, ABSENT)
        self.assertFalse(presence.exists)

    async def test_probe_tags(self):
        inspector = self.inspector(MagicMock())
        outcomes = {
            "1.0.0": TagPresence(True, {"amd64": AMD64_DIGEST, "arm64": ARM64_DIGEST}),
            "1.1.0": ABSENT,
        }

        async def inspect(repository, tag):
            if tag in outcomes:
                return outcomes[tag]
            raise RegistryProbeIndeterminate(repository, [tag], "HTTP 403", status=403)

        inspector.inspect_architectures = inspect
        result = await inspector.probe_tags("acme/mirror/outline", ["1.0.0", "1.1.0", "1.2.0", "1.0.0"])
        self.assertEqual(set(result), {"1.0.0", "1.1.0", "1.2.0"})
        self.assertIs(result["1.1.0"], ABSENT)
        self.assertIsInstance(result["1.2.0"], RegistryProbeIndeterminate)

    async def test_malformed_index_is_indeterminate(self):
        for index in ({"manifests": [None]}, {"manifests": [{"digest": AMD64_DIGEST, "platform": "linux/amd64"}]},
                      {"manifests": {"digest": AMD64_DIGEST}}):
            session = MagicMock()
            session.request.return_value = response(200, payload=index)
            with self.assertRaisesRegex(RegistryProbeIndeterminate, "malformed manifest index"):
                await self.inspector(session).inspect_architectures("acme/mattermost", "10.3.1")

    async def test_malformed_index_leaves_other_tags_probed(self):
        session = MagicMock()

        def request(method, url, **kwargs):
            if url.endswith("/manifests/10.3.1"):
                return response(200, payload={"manifests": [None]})
            return response(200, payload=INDEX)

        session.request.side_effect = request
        result = await self.inspector(session).probe_tags("acme/mattermost", ["10.3.1", "10.3.0"])
        self.assertIsInstance(result["10.3.1"], RegistryProbeIndeterminate)
        self.assertEqual(result["10.3.1"].tags, ["10.3.1"])
        self.assertEqual(result["10.3.0"].digests, {"amd64": AMD64_DIGEST, "arm64": ARM64_DIGEST})

    async def test_index_entries_without_platform_are_ignored(self):
        session = MagicMock()
        session.request.return_value = response(200, payload={"manifests": [{"digest": CONFIG_DIGEST}] + INDEX["manifests"]})
        presence = await self.inspector(session).inspect_architectures("acme/mattermost", "10.3.1")
        self.assertEqual(presence.digests, {"amd64": AMD64_DIGEST, "arm64": ARM64_DIGEST})

    async def test_probe_tags_propagates_unexpected_errors(self):
        inspector = self.inspector(MagicMock())
        inspector.inspect_architectures = AsyncMock(side_effect=KeyError("bug"))
        with self.assertRaises(KeyError):
            await inspector.probe_tags("acme/mirror/outline", ["1.0.0"])

    async def test_list_existing_tags(self):
        inspector = self.inspector(MagicMock())
        inspector.exists = AsyncMock(side_effect=lambda repo, tag: tag == "1.0.0")
        self.assertEqual(await inspector.list_existing_tags("acme/mirror/outline", ["1.0.0", "1.1.0"]), {"1.0.0"})

    async def test_list_existing_tags_indeterminate(self):
        inspector = self.inspector(MagicMock())

        async def exists(repository, tag):
            if tag == "1.2.0":
                raise RegistryProbeIndeterminate(repository, [tag], "HTTP 401", status=401)
            return tag == "1.0.0"

        inspector.exists = exists
        with self.assertRaises(RegistryProbeIndeterminate) as cm:
            await inspector.list_existing_tags("acme/mirror/outline", ["1.0.0", "1.1.0", "1.2.0"])
        self.assertEqual(cm.exception.tags, ["1.2.0"])
        self.assertEqual(cm.exception.existing, {"1.0.0"})
