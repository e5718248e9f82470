"""Tests for coba.prompt: templates, project context and agent rules."""

import json

from coba import prompt
from coba.prompt import (
    CONTEXT_HEADER,
    MAX_RULES_CHARS,
    RULES_HEADER,
    build_system_prompt,
    find_agent_rules,
    load_agent_rules,
    load_project_context,
    load_template,
)


class TestTemplate:
    def test_provider_specific(self):
        assert load_template("ollama") != load_template("openai")

    def test_unknown_provider_falls_back(self):
        assert load_template("openai") == load_template("default")
        assert load_template("no-such-provider")


class TestAgentRules:
    def test_priority_order(self, tmp_path):
        (tmp_path / "CLAUDE.md").write_text("claude", encoding="utf-8")
        (tmp_path / "AGENTS.md").write_text("agents", encoding="utf-8")
        assert find_agent_rules(str(tmp_path)).name == "AGENTS.md"
        (tmp_path / ".cursorrules").write_text("cursor", encoding="utf-8")
        assert load_agent_rules(str(tmp_path)) == "cursor"

    def test_priority_beats_depth(self, tmp_path):
        (tmp_path / "docs").mkdir()
        (tmp_path / "docs" / "AGENTS.md").write_text("nested agents", encoding="utf-8")
        (tmp_path / "CLAUDE.md").write_text("top claude", encoding="utf-8")
        assert load_agent_rules(str(tmp_path)) == "nested agents"

    def test_shallowest_wins(self, tmp_path):
        (tmp_path / "a" / "b").mkdir(parents=True)
        (tmp_path / "a" / "b" / "AGENTS.md").write_text("deep", encoding="utf-8")
        (tmp_path / "z").mkdir()
        (tmp_path / "z" / "AGENTS.md").write_text("shallow", encoding="utf-8")
        assert load_agent_rules(str(tmp_path)) == "shallow"

    def test_ignored_directories_skipped(self, tmp_path):
        (tmp_path / ".gitignore").write_text("vendor/\n", encoding="utf-8")
        (tmp_path / "vendor").mkdir()
        (tmp_path / "vendor" / "AGENTS.md").write_text("vendored", encoding="utf-8")
        assert find_agent_rules(str(tmp_path)) is None

    def test_truncated(self, tmp_path):
        (tmp_path / "AGENTS.md").write_text("x" * (MAX_RULES_CHARS + 50), encoding="utf-8")
        assert len(load_agent_rules(str(tmp_path))) == MAX_RULES_CHARS

    def test_blank_file_means_none(self, tmp_path):
        (tmp_path / "AGENTS.md").write_text("  \n", encoding="utf-8")
        assert load_agent_rules(str(tmp_path)) is None


class TestProjectContext:
    def test_directories_and_metadata(self, tmp_path):
        (tmp_path / "src" / "pkg").mkdir(parents=True)
        (tmp_path / "tests").mkdir()
        (tmp_path / "package.json").write_text(json.dumps({"name": "demo"}), encoding="utf-8")
        context = load_project_context(str(tmp_path))
        lines = context.splitlines()
        assert lines[0] == CONTEXT_HEADER
        assert lines[1] == "Directory Structure:"
        assert lines[2:5] == ["src", "src/pkg", "tests"]
        assert "package.json:" in lines
        assert '  "name": "demo"' in context

    def test_no_subdirectories(self, tmp_path):
        context = load_project_context(str(tmp_path))
        assert "(no subdirectories)" in context

    def test_git_and_ignored_hidden(self, tmp_path):
        (tmp_path / ".gitignore").write_text("node_modules/\n", encoding="utf-8")
        (tmp_path / ".git").mkdir()
        (tmp_path / "node_modules").mkdir()
        (tmp_path / "lib").mkdir()
        context = load_project_context(str(tmp_path))
        assert "lib" in context.splitlines()
        assert ".git" not in context
        assert "node_modules" not in context

    def test_truncation_keeps_sorted_prefix(self, tmp_path, monkeypatch):
        monkeypatch.setattr(prompt, "MAX_TREE_ENTRIES", 3)
        for name in ("a/x", "b", "c", "d"):
            (tmp_path / name).mkdir(parents=True)
        lines = load_project_context(str(tmp_path)).splitlines()
        assert lines[2:6] == ["a", "a/x", "b", "[... truncated at 3 directories]"]


class TestBuildSystemPrompt:
    def test_sections(self, make_session, work_dir):
        (work_dir / "AGENTS.md").write_text("Use tabs.", encoding="utf-8")
        prompt = build_system_prompt(make_session())
        assert prompt.startswith(load_template("ollama"))
        assert CONTEXT_HEADER in prompt
        assert prompt.endswith(f"{RULES_HEADER}\nUse tabs.")

    def test_rules_disabled(self, make_session, work_dir):
        (work_dir / "AGENTS.md").write_text("Use tabs.", encoding="utf-8")
        prompt = build_system_prompt(make_session(disable_agent_rules=True))
        assert RULES_HEADER not in prompt
        assert "Use tabs." not in prompt

    def test_deterministic(self, make_session, work_dir):
        (work_dir / "src").mkdir()
        session = make_session(provider="openai")
        assert build_system_prompt(session) == build_system_prompt(session)
