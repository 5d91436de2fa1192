from unittest import IsolatedAsyncioTestCase
from unittest.mock import AsyncMock, MagicMock

import aiohttp
from tenacity import wait_none

from mirrorlib.config import parse_config
from mirrorlib.exceptions import UpstreamUnavailable
from mirrorlib.upstream import VersionSource
from mirrorlib.version import SemanticVersion


def response(status=200, payload=None):
    resp = MagicMock(status=status)
    resp.json = AsyncMock(return_value=payload)
    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=resp)
    cm.__aexit__ = AsyncMock(return_value=False)
    return cm


def releases(*tags, **flags):
    return [dict({"tag_name": tag, "published_at": "2025-01-01T00:00:00Z"}, **flags) for tag in tags]


CONFIG = parse_config({
    "projects": {
        "mattermost": {"upstream": "mattermost/mattermost"},
        "mostlymatter": {
            "upstream": {"provider": "gitlab", "url": "https://framagit.org", "repository": "framasoft/framateam/mostlymatter"},
            "tag_pattern": r"^(?P<version>\d+\.\d+\.\d+)-limitless$",
        },
    },
})


class TestVersionSource(IsolatedAsyncioTestCase):

    def source(self, session, fetch_size=30):
        return VersionSource(session, fetch_size=fetch_size, tokens={"github": "ghp_token"}, retries=3, retry_wait=wait_none())

    async def test_list_releases_github(self):
        session = MagicMock()
        session.get.return_value = response(payload=releases("v10.3.1", "v10.3.0", "nightly") +
                                            releases("v10.4.0", prerelease=True))
        records = await self.source(session).list_releases(CONFIG.project("mattermost"))

        self.assertEqual([r.raw_tag for r in records], ["v10.3.1", "v10.3.0", "v10.4.0"])
        self.assertEqual(records[0].version, SemanticVersion.parse("10.3.1"))
        self.assertFalse(records[0].is_prerelease)
        self.assertTrue(records[2].is_prerelease)
        self.assertIsNotNone(records[0].published_at)

        url = session.get.call_args[0][0]
        self.assertEqual(url, "https://api.github.com/repos/mattermost/mattermost/releases")
        headers = session.get.call_args[1]["headers"]
        self.assertEqual(headers["Authorization"], "Bearer ghp_token")
        self.assertEqual(session.get.call_args[1]["params"], {"per_page": 30, "page": 1})

    async def test_drafts_are_prereleases(self):
        session = MagicMock()
        session.get.return_value = response(payload=releases("v10.5.0", draft=True))
        records = await self.source(session).list_releases(CONFIG.project("mattermost"))
        self.assertTrue(records[0].is_prerelease)

    async def test_list_releases_gitlab(self):
        session = MagicMock()
        session.get.return_value = response(payload=[
            {"tag_name": "v11.0.4-limitless", "released_at": "2025-06-01T00:00:00Z"},
            {"tag_name": "v11.0.4", "released_at": "2025-06-01T00:00:00Z"},
            {"tag_name": "v11.1.0-limitless", "upcoming_release": True},
        ])
        records = await self.source(session).list_releases(CONFIG.project("mostlymatter"))

        self.assertEqual([str(r.version) for r in records], ["11.0.4", "11.1.0"])
        self.assertEqual(records[0].raw_tag, "v11.0.4-limitless")
        self.assertTrue(records[1].is_prerelease)
        url = session.get.call_args[0][0]
        self.assertEqual(url, "https://framagit.org/api/v4/projects/framasoft%2Fframateam%2Fmostlymatter/releases")

    async def test_pagination_stops_at_fetch_size(self):
        session = MagicMock()
        session.get.side_effect = [
            response(payload=releases(*[f"v2.{i}.0" for i in range(100)])),
            response(payload=releases(*[f"v1.{i}.0" for i in range(100)])),
            response(payload=releases("v0.9.0")),
        ]
        records = await self.source(session, fetch_size=150).list_releases(CONFIG.project("mattermost"))
        self.assertEqual(len(records), 150)
        self.assertEqual(records[-1].raw_tag, "v1.49.0")
        self.assertEqual(session.get.call_count, 2)
        self.assertEqual(session.get.call_args[1]["params"], {"per_page": 100, "page": 2})

    async def test_short_page_ends_pagination(self):
        session = MagicMock()
        session.get.side_effect = [response(payload=releases("v1.0.1", "v1.0.0"))]
        records = await self.source(session, fetch_size=3).list_releases(CONFIG.project("mattermost"))
        self.assertEqual([r.raw_tag for r in records], ["v1.0.1", "v1.0.0"])
        self.assertEqual(session.get.call_count, 1)

    async def test_empty_result(self):
        session = MagicMock()
        session.get.return_value = response(payload=[])
        self.assertEqual(await self.source(session).list_releases(CONFIG.project("mattermost")), [])

    async def test_transient_errors_are_retried(self):
        session = MagicMock()
        session.get.side_effect = [
            response(status=502),
            response(status=429),
            response(payload=releases("v10.3.1")),
        ]
        records = await self.source(session).list_releases(CONFIG.project("mattermost"))
        self.assertEqual(len(records), 1)
        self.assertEqual(session.get.call_count, 3)

    async def test_unavailable_after_retries(self):
        session = MagicMock()
        session.get.return_value = response(status=503)
        with self.assertRaises(UpstreamUnavailable):
            await self.source(session).list_releases(CONFIG.project("mattermost"))
        self.assertEqual(session.get.call_count, 3)

    async def test_connection_errors(self):
        session = MagicMock()
        session.get.side_effect = aiohttp.ClientConnectionError("connection reset")
        with self.assertRaisesRegex(UpstreamUnavailable, "connection reset"):
            await self.source(session).list_releases(CONFIG.project("mattermost"))

    async def test_client_errors_are_not_retried(self):
        session = MagicMock()
        session.get.return_value = response(status=401)
        with self.assertRaisesRegex(UpstreamUnavailable, "HTTP 401"):
            await self.source(session).list_releases(CONFIG.project("mattermost"))
        self.assertEqual(session.get.call_count, 1)

    async def test_missing_repository(self):
        session = MagicMock()
        session.get.return_value = response(status=404)
        with self.assertRaisesRegex(UpstreamUnavailable, "does not exist"):
            await self.source(session).list_releases(CONFIG.project("mattermost"))

    async def test_html_answer_is_unavailable(self):
        session = MagicMock()
        resp = response()
        resp.__aenter__.return_value.json = AsyncMock(side_effect=aiohttp.ContentTypeError(
            MagicMock(), (), message="Attempt to decode JSON with unexpected mimetype: text/html"))
        session.get.return_value = resp
        with self.assertRaisesRegex(UpstreamUnavailable, "did not return JSON"):
            await self.source(session).list_releases(CONFIG.project("mattermost"))
        self.assertEqual(session.get.call_count, 1)

    async def test_invalid_json_is_unavailable(self):
        session = MagicMock()
        resp = response()
        resp.__aenter__.return_value.json = AsyncMock(side_effect=ValueError("Expecting value: line 1 column 1"))
        session.get.return_value = resp
        with self.assertRaises(UpstreamUnavailable):
            await self.source(session).latest_release(CONFIG.project("mattermost"))

    async def test_other_client_errors_are_unavailable(self):
        session = MagicMock()
        session.get.side_effect = aiohttp.InvalidURL("not a url")
        with self.assertRaises(UpstreamUnavailable):
            await self.source(session).list_releases(CONFIG.project("mattermost"))

    async def test_latest_release(self):
        session = MagicMock()
        session.get.return_value = response(payload={"tag_name": "v10.3.1"})
        record = await self.source(session).latest_release(CONFIG.project("mattermost"))
        self.assertEqual(record.version, SemanticVersion.parse("10.3.1"))
        self.assertTrue(session.get.call_args[0][0].endswith("/releases/latest"))

        session.get.return_value = response(status=404)
        self.assertIsNone(await self.source(session).latest_release(CONFIG.project("mattermost")))

    def test_invalid_fetch_size(self):
        with self.assertRaises(ValueError):
            VersionSource(MagicMock(), fetch_size=0)
