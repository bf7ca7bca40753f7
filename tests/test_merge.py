"""Tests for merge ordering, branch merging and the merge phase."""

import asyncio
from pathlib import Path

from agent_fleet.agents import AgentResult
from agent_fleet.git import branch_exists
from agent_fleet.merge import (
    PreMergeAnalysis,
    abort_merge,
    analyze_pre_merge,
    calculate_conflict_score,
    delete_merged_branches,
    get_potential_conflict_files,
    is_merge_in_progress,
    merge_agent_branch,
    rollback_merge,
    sort_by_conflict_likelihood,
)
from agent_fleet.orchestrator import merge_completed_branches

from fakes import FakeAgent, git, scripted_agent


def commit_on_branch(repo: Path, branch: str, files: dict[str, str], base: str = "main") -> None:
    git(repo, "checkout", "-q", "-b", branch, base)
    for rel, content in files.items():
        path = repo / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", f"change on {branch}")
    git(repo, "checkout", "-q", "main")


def commit_on_main(repo: Path, files: dict[str, str]) -> None:
    for rel, content in files.items():
        (repo / rel).write_text(content)
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", "change on main")


# ---------------------------------------------------------------------------
# Conflict scoring
# ---------------------------------------------------------------------------


def test_conflict_scores_and_order() -> None:
    shared_cd = [f"core/{i}.py" for i in range(5)]
    a = PreMergeAnalysis("a", ["docs/a.md"])
    b = PreMergeAnalysis("b", ["lib/b1.py", "lib/b2.py"])
    c = PreMergeAnalysis("c", shared_cd + ["c_only.py"])
    d = PreMergeAnalysis("d", shared_cd + ["lib/b1.py", "lib/b2.py"])
    analyses = [d, c, b, a]

    scores = {x.branch: calculate_conflict_score(x, analyses) for x in analyses}
    assert scores == {"a": 0, "b": 2, "c": 5, "d": 7}
    assert [x.branch for x in sort_by_conflict_likelihood(analyses)] == ["a", "b", "c", "d"]


def test_ties_break_on_file_count_then_input_order() -> None:
    big = PreMergeAnalysis("big", ["1", "2", "3"])
    small = PreMergeAnalysis("small", ["4"])
    also_small = PreMergeAnalysis("also-small", ["5"])

    ordered = sort_by_conflict_likelihood([big, small, also_small])

    assert [x.branch for x in ordered] == ["small", "also-small", "big"]


def test_branch_with_no_changes_scores_zero() -> None:
    empty = PreMergeAnalysis("empty")
    other = PreMergeAnalysis("other", ["x.py"])
    assert calculate_conflict_score(empty, [empty, other]) == 0
    assert empty.file_count == 0


# ---------------------------------------------------------------------------
# Analysis against a real repository
# ---------------------------------------------------------------------------


def test_analysis_only_sees_branch_side_changes(git_repo: Path) -> None:
    commit_on_branch(git_repo, "feature", {"feature.py": "f = 1\n"})
    commit_on_main(git_repo, {"README.md": "# changed on main\n"})

    analysis = asyncio.run(analyze_pre_merge("feature", "main", git_repo))

    assert analysis.branch == "feature"
    assert analysis.files_changed == ["feature.py"]


def test_analysis_of_missing_branch_is_empty(git_repo: Path) -> None:
    analysis = asyncio.run(analyze_pre_merge("no-such-branch", "main", git_repo))
    assert analysis.files_changed == []


def test_potential_conflict_files(git_repo: Path) -> None:
    commit_on_branch(git_repo, "feature", {"src/app.py": "print('feature')\n", "new.py": "n\n"})
    commit_on_main(git_repo, {"src/app.py": "print('main')\n"})

    assert asyncio.run(get_potential_conflict_files("feature", "main", git_repo)) == ["src/app.py"]


# ---------------------------------------------------------------------------
# merge_agent_branch
# ---------------------------------------------------------------------------


def test_clean_merge_creates_merge_commit(git_repo: Path) -> None:
    commit_on_branch(git_repo, "feature", {"feature.py": "f = 1\n"})

    result = asyncio.run(merge_agent_branch("feature", "main", git_repo))

    assert result.success
    assert (git_repo / "feature.py").is_file()
    parents = git(git_repo, "log", "-1", "--format=%P").split()
    assert len(parents) == 2
    assert git(git_repo, "rev-parse", "--abbrev-ref", "HEAD").strip() == "main"


def test_conflicting_merge_is_left_in_progress(git_repo: Path) -> None:
    commit_on_branch(git_repo, "feature", {"src/app.py": "print('feature')\n"})
    commit_on_main(git_repo, {"src/app.py": "print('main')\n"})

    result = asyncio.run(merge_agent_branch("feature", "main", git_repo))

    assert not result.success
    assert result.has_conflicts
    assert result.conflicted_files == ["src/app.py"]
    assert result.potential_conflict_files == ["src/app.py"]
    assert asyncio.run(is_merge_in_progress(git_repo))

    asyncio.run(abort_merge(git_repo))
    assert not asyncio.run(is_merge_in_progress(git_repo))
    assert (git_repo / "src" / "app.py").read_text() == "print('main')\n"


def test_rollback_undoes_a_committed_merge(git_repo: Path) -> None:
    commit_on_branch(git_repo, "feature", {"src/app.py": "print('feature')\n"})
    commit_on_main(git_repo, {"src/app.py": "print('main')\n"})
    before = git(git_repo, "rev-parse", "main").strip()

    asyncio.run(merge_agent_branch("feature", "main", git_repo))
    git(git_repo, "add", "-A")
    git(git_repo, "commit", "-q", "--no-edit")
    assert git(git_repo, "rev-parse", "main").strip() != before

    asyncio.run(rollback_merge("main", before, git_repo))

    assert git(git_repo, "rev-parse", "main").strip() == before
    assert (git_repo / "src" / "app.py").read_text() == "print('main')\n"
    assert git(git_repo, "status", "--porcelain").strip() == ""


def test_rollback_returns_to_target_branch(git_repo: Path) -> None:
    commit_on_branch(git_repo, "feature", {"src/app.py": "print('feature')\n"})
    commit_on_main(git_repo, {"src/app.py": "print('main')\n"})
    before = git(git_repo, "rev-parse", "main").strip()

    asyncio.run(merge_agent_branch("feature", "main", git_repo))
    git(git_repo, "merge", "--abort")
    git(git_repo, "checkout", "-q", "feature")

    asyncio.run(rollback_merge("main", before, git_repo))

    assert git(git_repo, "rev-parse", "--abbrev-ref", "HEAD").strip() == "main"
    assert git(git_repo, "rev-parse", "main").strip() == before


def test_merging_unknown_branch_reports_error(git_repo: Path) -> None:
    result = asyncio.run(merge_agent_branch("ghost", "main", git_repo))
    assert not result.success
    assert not result.has_conflicts
    assert result.error
    assert not asyncio.run(is_merge_in_progress(git_repo))


# ---------------------------------------------------------------------------
# Branch deletion
# ---------------------------------------------------------------------------


def test_delete_merged_branches(git_repo: Path) -> None:
    for i in range(5):
        git(git_repo, "branch", f"agent/done-{i}")

    undeleted = asyncio.run(
        delete_merged_branches([f"agent/done-{i}" for i in range(5)] + ["agent/ghost"], git_repo)
    )

    assert undeleted == ["agent/ghost"]
    assert git(git_repo, "branch", "--list", "agent/*").strip() == ""


def test_delete_nothing() -> None:
    assert asyncio.run(delete_merged_branches([], Path("."))) == []


# ---------------------------------------------------------------------------
# Merge phase
# ---------------------------------------------------------------------------


def _three_branches(repo: Path) -> list[str]:
    commit_on_branch(repo, "agent/one", {"src/app.py": "print('one')\n"})
    commit_on_branch(repo, "agent/two", {"src/app.py": "print('two')\n"})
    commit_on_branch(repo, "agent/docs", {"docs/guide.md": "# guide\n"})
    return ["agent/one", "agent/two", "agent/docs"]


def test_merge_phase_aborts_unresolvable_conflicts(git_repo: Path) -> None:
    branches = _three_branches(git_repo)
    agent = scripted_agent(AgentResult(success=False, error="could not resolve"))

    summary = asyncio.run(merge_completed_branches(branches, "main", agent, git_repo))

    # docs has no overlap so it goes first; one and two tie and keep their order
    assert summary.merged == ["agent/docs", "agent/one"]
    assert summary.failed == ["agent/two"]
    assert summary.undeleted == []
    assert len(agent.calls) == 1
    assert "src/app.py" in agent.calls[0][0]

    assert not asyncio.run(is_merge_in_progress(git_repo))
    assert git(git_repo, "status", "--porcelain").strip() == ""
    assert (git_repo / "src" / "app.py").read_text() == "print('one')\n"
    assert asyncio.run(branch_exists("agent/two", git_repo))
    assert not asyncio.run(branch_exists("agent/one", git_repo))
    assert not asyncio.run(branch_exists("agent/docs", git_repo))


def test_merge_phase_commits_ai_resolution(git_repo: Path) -> None:
    branches = _three_branches(git_repo)

    async def resolve(prompt: str, work_dir: Path, n: int) -> AgentResult:
        (work_dir / "src" / "app.py").write_text("print('one')\nprint('two')\n")
        return AgentResult(success=True, response="resolved")

    agent = FakeAgent(resolve)

    summary = asyncio.run(merge_completed_branches(branches, "main", agent, git_repo))

    assert summary.merged == ["agent/docs", "agent/one", "agent/two"]
    assert summary.failed == []
    assert not asyncio.run(is_merge_in_progress(git_repo))
    assert git(git_repo, "status", "--porcelain").strip() == ""
    assert (git_repo / "src" / "app.py").read_text() == "print('one')\nprint('two')\n"
    assert git(git_repo, "branch", "--list", "agent/*").strip() == ""


def test_merge_phase_rejects_resolution_with_markers(git_repo: Path) -> None:
    branches = _three_branches(git_repo)

    async def lazy(prompt: str, work_dir: Path, n: int) -> AgentResult:
        return AgentResult(success=True, response="looks fine to me")

    summary = asyncio.run(merge_completed_branches(branches, "main", FakeAgent(lazy), git_repo))

    assert summary.failed == ["agent/two"]
    assert not asyncio.run(is_merge_in_progress(git_repo))
    assert "<<<<<<<" not in (git_repo / "src" / "app.py").read_text()


def test_merge_phase_undoes_resolver_commit_with_markers(git_repo: Path) -> None:
    branches = _three_branches(git_repo)

    async def commit_as_is(prompt: str, work_dir: Path, n: int) -> AgentResult:
        git(work_dir, "add", "-A")
        git(work_dir, "commit", "-q", "--no-edit")
        return AgentResult(success=True, response="committed")

    summary = asyncio.run(
        merge_completed_branches(branches, "main", FakeAgent(commit_as_is), git_repo)
    )

    assert summary.merged == ["agent/docs", "agent/one"]
    assert summary.failed == ["agent/two"]
    assert not asyncio.run(is_merge_in_progress(git_repo))
    assert git(git_repo, "status", "--porcelain").strip() == ""
    assert git(git_repo, "show", "main:src/app.py") == "print('one')\n"
    assert asyncio.run(branch_exists("agent/two", git_repo))
    # agent/two is no longer reachable from main
    assert git(git_repo, "branch", "--merged", "main", "--list", "agent/two").strip() == ""


def test_merge_phase_with_no_branches(git_repo: Path) -> None:
    agent = scripted_agent(AgentResult(success=True))
    summary = asyncio.run(merge_completed_branches([], "main", agent, git_repo))
    assert summary.merged == [] and summary.failed == []
    assert agent.calls == []
