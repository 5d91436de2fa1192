import unittest

from mirrorlib.model import BuildJob, BuildResult, ManifestPlan, MergeGroup, validate_digest
from mirrorlib.version import SemanticVersion

DIGEST = "sha256:" + "0123456789abcdef" * 4


def job(arch="amd64", **kwargs):
    defaults = dict(component="outline", version=SemanticVersion.parse("0.82.0"), arch=arch,
                    runner="ubuntu-24.04", platform=f"linux/{arch}", image="ghcr.io/acme/outline")
    defaults.update(kwargs)
    return BuildJob(**defaults)


class TestBuildJob(unittest.TestCase):

    def test_validation(self):
        with self.assertRaisesRegex(ValueError, "Unknown architecture"):
            job(arch="s390x", platform="linux/s390x")
        with self.assertRaisesRegex(ValueError, "does not match"):
            job(platform="linux/arm64")
        with self.assertRaisesRegex(ValueError, "No runner"):
            job(runner="")

    def test_dict_round_trip(self):
        original = job(build_args={"MM_PACKAGE": "x"}, dockerfile_patches=(("Dockerfile", "a", "b"),))
        self.assertEqual(original.key, "outline-0.82.0-amd64")
        self.assertEqual(BuildJob.from_dict(original.to_dict()), original)

    def test_from_dict_rejects_malformed(self):
        with self.assertRaisesRegex(ValueError, "mapping"):
            BuildJob.from_dict(["outline"])
        with self.assertRaisesRegex(ValueError, "missing 'runner'"):
            BuildJob.from_dict({"component": "outline", "version": "1.0.0", "arch": "amd64", "platform": "linux/amd64"})
        data = job().to_dict()
        data["dockerfile_patches"] = [["Dockerfile", "only-two"]]
        with self.assertRaisesRegex(ValueError, "dockerfile_patches"):
            BuildJob.from_dict(data)


class TestBuildResult(unittest.TestCase):

    def test_exactly_one_of_digest_or_error(self):
        with self.assertRaises(ValueError):
            BuildResult(job())
        with self.assertRaises(ValueError):
            BuildResult(job(), digest=DIGEST, error="boom")
        self.assertTrue(BuildResult(job(), digest=DIGEST).succeeded)
        self.assertFalse(BuildResult(job(), error="boom").succeeded)

    def test_invalid_digest(self):
        with self.assertRaises(ValueError):
            BuildResult(job(), digest="sha256:nothex")
        self.assertEqual(validate_digest(f" {DIGEST}\n"), DIGEST)

    def test_from_dict(self):
        result = BuildResult.from_dict({"job": job().to_dict(), "digest": DIGEST, "error": None})
        self.assertEqual(result.digest, DIGEST)
        with self.assertRaises(ValueError):
            BuildResult.from_dict({"digest": DIGEST})


class TestMergeGroup(unittest.TestCase):

    def test_missing_arches(self):
        group = MergeGroup("outline", SemanticVersion.parse("0.82.0"), True, ("amd64", "arm64"), {"amd64": DIGEST})
        self.assertEqual(group.missing_arches, ["arm64"])
        self.assertFalse(group.is_complete)
        self.assertFalse(MergeGroup("outline", SemanticVersion.parse("0.82.0"), True, ()).is_complete)

    def test_manifest_plan(self):
        plan = ManifestPlan("outline", "ghcr.io/acme/outline", SemanticVersion.parse("0.82.0"), ("0.82.0", "latest"),
                            {"arm64": DIGEST, "amd64": DIGEST})
        self.assertEqual(plan.pullspecs, ["ghcr.io/acme/outline:0.82.0", "ghcr.io/acme/outline:latest"])
        self.assertEqual(plan.references, [f"ghcr.io/acme/outline@{DIGEST}"] * 2)
        self.assertEqual(plan.to_dict()["tags"], ["0.82.0", "latest"])
