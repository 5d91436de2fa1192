import json
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import AsyncMock, patch

from mirrorlib.exceptions import IncompleteMergeGroup
from mirrorlib.merger import ManifestMerger, tags_for
from mirrorlib.model import BuildJob, BuildResult, ManifestPlan, MergeGroup
from mirrorlib.planner import VersionPlan
from mirrorlib.version import SemanticVersion, TagPattern

V = SemanticVersion.parse
AMD64 = "sha256:" + "a" * 64
ARM64 = "sha256:" + "b" * 64
INDEX = "sha256:" + "f" * 64


def job(version, arch, component="mattermost"):
    return BuildJob(component=component, version=V(version), arch=arch, runner="runner", platform=f"linux/{arch}",
                    image="ghcr.io/acme/mattermost")


def make_plan(candidates, window=("10.3.1", "10.3.0", "10.2.1"), existing=None):
    records = tuple(TagPattern().to_record(v) for v in window)
    return VersionPlan(
        project="mattermost", component="mattermost", image="ghcr.io/acme/mattermost", repository="acme/mattermost",
        architectures=("amd64", "arm64"), window=records, latest=records[0],
        build_candidates=tuple((V(v), a) for v, a in candidates), existing_digests=existing or {},
    )


class TestGroup(TestCase):

    def test_only_latest_version_gets_latest_tag(self):
        plan = make_plan([("10.3.1", "amd64"), ("10.3.1", "arm64"), ("10.2.1", "amd64"), ("10.2.1", "arm64")])
        results = [
            BuildResult(job("10.2.1", "amd64"), digest=AMD64),
            BuildResult(job("10.2.1", "arm64"), digest=ARM64),
            BuildResult(job("10.3.1", "arm64"), digest=ARM64),
            BuildResult(job("10.3.1", "amd64"), digest=AMD64),
        ]
        merger = ManifestMerger()
        groups = {g.version: g for g in merger.group(results, plan)}
        self.assertTrue(groups[V("10.3.1")].is_latest)
        self.assertFalse(groups[V("10.2.1")].is_latest)
        self.assertEqual(merger.plan(groups[V("10.3.1")], plan.image).tags, ("10.3.1", "latest"))
        self.assertEqual(merger.plan(groups[V("10.2.1")], plan.image).tags, ("10.2.1",))

    def test_failed_latest_build_does_not_move_latest(self):
        plan = make_plan([("10.3.1", "amd64"), ("10.3.1", "arm64"), ("10.3.0", "amd64"), ("10.3.0", "arm64")])
        results = [
            BuildResult(job("10.3.1", "amd64"), error="boom"),
            BuildResult(job("10.3.1", "arm64"), error="boom"),
            BuildResult(job("10.3.0", "amd64"), digest=AMD64),
            BuildResult(job("10.3.0", "arm64"), digest=ARM64),
        ]
        groups = {g.version: g for g in ManifestMerger().group(results, plan)}
        self.assertFalse(groups[V("10.3.0")].is_latest)

    def test_incomplete_group_is_rejected(self):
        plan = make_plan([("10.3.1", "amd64"), ("10.3.1", "arm64")])
        results = [
            BuildResult(job("10.3.1", "amd64"), digest=AMD64),
            BuildResult(job("10.3.1", "arm64"), error="arm64 runner crashed"),
        ]
        merger = ManifestMerger()
        group, = merger.group(results, plan)
        with self.assertRaises(IncompleteMergeGroup) as cm:
            merger.plan(group, plan.image)
        self.assertEqual(cm.exception.missing_arches, ["arm64"])

    def test_existing_digests_seed_the_group(self):
        plan = make_plan([("10.3.1", "arm64")], existing={V("10.3.1"): {"amd64": AMD64}})
        merger = ManifestMerger()
        group, = merger.group([BuildResult(job("10.3.1", "arm64"), digest=ARM64)], plan)
        manifest = merger.plan(group, plan.image)
        self.assertEqual(manifest.source_digests, {"amd64": AMD64, "arm64": ARM64})

    def test_result_outside_plan(self):
        plan = make_plan([("10.3.1", "amd64")])
        with self.assertRaises(ValueError):
            ManifestMerger().group([BuildResult(job("9.0.0", "amd64"), digest=AMD64)], plan)
        with self.assertRaises(ValueError):
            ManifestMerger().group([BuildResult(job("10.3.1", "amd64", component="other"), digest=AMD64)], plan)

    def test_tags_for(self):
        self.assertEqual(tags_for(V("1.2.3"), False), ["1.2.3"])
        self.assertEqual(tags_for(V("1.2.3"), True), ["1.2.3", "latest"])


class TestPush(IsolatedAsyncioTestCase):

    def manifest(self):
        return ManifestPlan("mattermost", "ghcr.io/acme/mattermost", V("10.3.1"), ("10.3.1", "latest"),
                            {"amd64": AMD64, "arm64": ARM64})

    async def test_push(self):
        with patch("mirrorlib.merger.exectools.cmd_assert_async", new_callable=AsyncMock) as cmd_assert_async:
            cmd_assert_async.side_effect = [("", ""), (json.dumps({"digest": INDEX}), "")]
            digest = await ManifestMerger().push(self.manifest())
        self.assertEqual(digest, INDEX)
        create_cmd = cmd_assert_async.call_args_list[0][0][0]
        self.assertEqual(create_cmd, [
            "docker", "buildx", "imagetools", "create",
            "-t", "ghcr.io/acme/mattermost:10.3.1",
            "-t", "ghcr.io/acme/mattermost:latest",
            f"ghcr.io/acme/mattermost@{AMD64}",
            f"ghcr.io/acme/mattermost@{ARM64}",
        ])
        inspect_cmd = cmd_assert_async.call_args_list[1][0][0]
        self.assertIn("ghcr.io/acme/mattermost:10.3.1", inspect_cmd)

    async def test_dry_run(self):
        with patch("mirrorlib.merger.exectools.cmd_assert_async", new_callable=AsyncMock) as cmd_assert_async:
            self.assertIsNone(await ManifestMerger(dry_run=True).push(self.manifest()))
        cmd_assert_async.assert_not_called()

    async def test_push_failure(self):
        with patch("mirrorlib.merger.exectools.cmd_assert_async", new_callable=AsyncMock) as cmd_assert_async:
            cmd_assert_async.side_effect = ChildProcessError("unauthorized")
            with self.assertRaises(ChildProcessError):
                await ManifestMerger().push(self.manifest())
