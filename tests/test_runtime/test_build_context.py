"""Tests for build context packing."""

import io
import tarfile

from noona_deploy.runtime.build_context import (
    IgnoreRules,
    load_ignore_rules,
    normalize_dockerfile_path,
    pack_build_context,
)


def archive_names(data):
    with tarfile.open(fileobj=io.BytesIO(data)) as tar:
        return set(tar.getnames())


class TestIgnoreRules:
    def test_unanchored_pattern_matches_any_component(self):
        rules = IgnoreRules(["node_modules"])
        assert rules.ignores("node_modules")
        assert rules.ignores("services/moon/node_modules/react/index.js")
        assert not rules.ignores("services/moon/src/index.js")

    def test_anchored_pattern(self):
        rules = IgnoreRules(["/services/raven/build"])
        assert rules.ignores("services/raven/build/libs/app.jar")
        assert not rules.ignores("other/services/raven/build")

    def test_anchored_wildcards_stop_at_directories(self):
        rules = IgnoreRules(["docs/*.md", "services/*/build", "logs/run-?.txt"])
        assert rules.ignores("docs/readme.md")
        assert not rules.ignores("docs/sub/keep.md")
        assert rules.ignores("services/moon/build/out.js")
        assert not rules.ignores("services/moon/src/build")
        assert rules.ignores("logs/run-1.txt")
        assert not rules.ignores("logs/run-10.txt")

    def test_globstar_crosses_directories(self):
        rules = IgnoreRules(["docs/**/*.md", "**/cache/tmp"])
        assert rules.ignores("docs/a.md")
        assert rules.ignores("docs/sub/deeper/keep.md")
        assert rules.ignores("cache/tmp/x")
        assert rules.ignores("services/moon/cache/tmp/x")
        assert not rules.ignores("services/moon/cache/keep")

    def test_negation_last_match_wins(self):
        rules = IgnoreRules(["*.log", "!keep.log"])
        assert rules.ignores("debug.log")
        assert not rules.ignores("keep.log")

    def test_globstar_prefix_and_comments(self):
        rules = IgnoreRules(["# comment", "", "**/*.tmp", "./coverage/"])
        assert rules.ignores("a/b/c.tmp")
        assert rules.ignores("coverage/index.html")
        assert not rules.ignores("src/app.js")

    def test_root_is_never_ignored(self):
        assert not IgnoreRules(["*"]).ignores(".")


class TestLoadIgnoreRules:
    def test_unions_builtin_root_and_dockerfile_dir(self, tmp_path):
        (tmp_path / ".dockerignore").write_text("*.secret\n")
        nested = tmp_path / "deployment"
        nested.mkdir()
        (nested / ".dockerignore").write_text("scratch\n")

        rules = load_ignore_rules(tmp_path.resolve(), nested / "moon.Dockerfile")
        assert rules.ignores(".git/config")
        assert rules.ignores("keys/api.secret")
        assert rules.ignores("scratch/notes.txt")
        assert not rules.ignores("services/moon/index.js")


class TestPackBuildContext:
    def test_honours_ignores_and_keeps_dockerfile(self, tmp_path):
        (tmp_path / ".dockerignore").write_text("*.Dockerfile\nlogs\n")
        (tmp_path / "deployment").mkdir()
        (tmp_path / "deployment" / "sage.Dockerfile").write_text("FROM python:3.12\n")
        (tmp_path / "deployment" / "vault.Dockerfile").write_text("FROM node:20\n")
        (tmp_path / "logs").mkdir()
        (tmp_path / "logs" / "deploy.log").write_text("old\n")
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
        (tmp_path / "services").mkdir()
        (tmp_path / "services" / "sage.py").write_text("print('hi')\n")

        names = archive_names(pack_build_context(tmp_path, tmp_path / "deployment" / "sage.Dockerfile"))

        assert "deployment/sage.Dockerfile" in names
        assert "deployment/vault.Dockerfile" not in names
        assert "services/sage.py" in names
        assert not any(n.startswith("logs") or n.startswith(".git") for n in names)


class TestNormalizeDockerfilePath:
    def test_absolute_path_made_relative(self):
        assert normalize_dockerfile_path("/srv/noona", "/srv/noona/deployment/moon.Dockerfile") == "deployment/moon.Dockerfile"

    def test_windows_separators(self):
        assert normalize_dockerfile_path("C:\\noona", "C:\\noona\\deployment\\moon.Dockerfile") == "deployment/moon.Dockerfile"

    def test_relative_path_kept(self):
        assert normalize_dockerfile_path("/srv/noona", "deployment\\moon.Dockerfile") == "deployment/moon.Dockerfile"

    def test_missing_dockerfile(self):
        assert normalize_dockerfile_path("/srv/noona", None) is None
