"""Tests for the policy gate."""

import pytest

from foreman.policy import (
    Decision,
    Operation,
    OperationKind,
    Policy,
    PolicyLimits,
    command_matches_entry,
    default_policy,
    evaluate,
    match_glob,
)


def _read(path):
    return Operation(kind=OperationKind.FILE_READ, target=path)


def _write(path, size=None):
    return Operation(kind=OperationKind.FILE_WRITE, target=path, size_bytes=size)


def _cmd(command):
    return Operation(kind=OperationKind.SHELL_COMMAND, target=command)


@pytest.fixture
def src_policy():
    return Policy(allowed_paths=["src/**"], blocked_paths=["src/secrets/**"])


# ---- Paths ----

def test_blocked_path_wins_over_allowed(src_policy):
    """src/secrets/key.pem is denied even though src/** is allowed."""
    decision = evaluate(_write("src/secrets/key.pem"), src_policy)
    assert decision.decision == Decision.DENY
    assert decision.matched_rule == "blocked_paths: src/secrets/**"


def test_allowed_path_permitted(src_policy):
    decision = evaluate(_write("src/app/main.ts"), src_policy)
    assert decision.allowed
    assert decision.matched_rule == "allowed_paths: src/**"


def test_path_outside_allow_list_denied(src_policy):
    decision = evaluate(_read("docs/readme.md"), src_policy)
    assert decision.denied
    assert decision.matched_rule == "allowed_paths"


def test_empty_allow_list_permits_unblocked_paths():
    assert evaluate(_read("anything/at/all.txt"), Policy()).allowed


@pytest.mark.parametrize("path", ["/etc/passwd", "../outside.txt", "src/../../etc/shadow", "C:/Windows/x"])
def test_escaping_paths_denied(path):
    decision = evaluate(_read(path), Policy())
    assert decision.denied
    assert decision.matched_rule == "project_root"


def test_dot_segments_are_normalized(src_policy):
    assert evaluate(_read("./src/a/../b.ts"), src_policy).allowed


def test_project_root_readable_not_writable():
    assert evaluate(_read(""), Policy()).allowed
    assert evaluate(_read("."), Policy()).allowed
    assert evaluate(_write("."), Policy()).denied


def test_blocked_pattern_matches_basename_anywhere():
    policy = Policy(blocked_patterns=["*.pem"])
    decision = evaluate(_read("deep/nested/dir/server.pem"), policy)
    assert decision.denied
    assert decision.matched_rule == "blocked_patterns: *.pem"


def test_directory_glob_covers_children():
    policy = Policy(blocked_paths=[".git/**", "node_modules"])
    assert evaluate(_read(".git/config"), policy).denied
    assert evaluate(_read("node_modules/left-pad/index.js"), policy).denied
    assert evaluate(_read("src/node_modules_helper.js"), policy).allowed


def test_write_over_size_limit_denied():
    policy = Policy(limits=PolicyLimits(max_file_size_bytes=10))
    decision = evaluate(_write("a.txt", size=11), policy)
    assert decision.denied
    assert decision.matched_rule == "limits: max_file_size_bytes"
    assert evaluate(_write("a.txt", size=10), policy).allowed


def test_size_limit_ignored_for_reads():
    policy = Policy(limits=PolicyLimits(max_file_size_bytes=10))
    assert evaluate(Operation(kind=OperationKind.FILE_READ, target="a.txt", size_bytes=100), policy).allowed


# ---- Commands ----

def test_blocked_command_denied_citing_entry():
    policy = Policy(allowed_commands=["npm"], blocked_commands=["rm -rf"])
    decision = evaluate(_cmd("rm -rf /"), policy)
    assert decision.denied
    assert "rm -rf" in decision.reason
    assert decision.matched_rule == "blocked_commands: rm -rf"


def test_blocked_command_is_case_insensitive_substring():
    policy = Policy(blocked_commands=["sudo"])
    assert evaluate(_cmd("env SUDO_ASKPASS=x SUDO ls"), policy).denied


def test_blocked_checked_before_allow_list():
    policy = Policy(allowed_commands=["git"], blocked_commands=["git push --force"])
    decision = evaluate(_cmd("git  push   --force origin main"), policy)
    assert decision.matched_rule == "blocked_commands: git push --force"


def test_program_not_in_allow_list_denied():
    policy = Policy(allowed_commands=["npm"])
    decision = evaluate(_cmd("python setup.py"), policy)
    assert decision.denied
    assert decision.matched_rule == "allowed_commands"


def test_allow_list_matches_program_path():
    policy = Policy(allowed_commands=["npm"])
    assert evaluate(_cmd("/usr/local/bin/npm test"), policy).allowed
    assert evaluate(_cmd("npmx test"), policy).denied


def test_shell_operators_denied():
    policy = Policy(allowed_commands=["npm"])
    for command in ("npm test && echo ok", "npm test | tee out", "npm test > out.txt", "npm $(whoami)"):
        decision = evaluate(_cmd(command), policy)
        assert decision.denied, command
        assert decision.matched_rule == "shell_operators"


def test_confirm_command_requires_confirmation():
    policy = Policy(allowed_commands=["git"], confirm_commands=["git push"])
    decision = evaluate(_cmd("git push origin main"), policy)
    assert decision.decision == Decision.REQUIRE_CONFIRMATION
    assert decision.matched_rule == "confirm_commands: git push"
    assert evaluate(_cmd("git pushx"), policy).denied is False
    assert evaluate(_cmd("git status"), policy).allowed


def test_empty_command_denied():
    assert evaluate(_cmd("   "), Policy()).denied


def test_command_matches_entry_multi_word():
    assert command_matches_entry("git reset --hard HEAD~1", "git reset --hard")
    assert not command_matches_entry("git reset --soft", "git reset --hard")


# ---- Purity ----

def test_evaluate_is_pure():
    """Identical inputs always yield identical decisions."""
    policy = default_policy()
    operations = [
        _read("src/index.ts"),
        _write(".env"),
        _cmd("npm test"),
        _cmd("sudo rm -rf /"),
        _cmd("git push origin main"),
    ]
    first = [evaluate(op, policy) for op in operations]
    for _ in range(3):
        assert [evaluate(op, policy) for op in operations] == first
    assert policy == default_policy()


def test_match_glob_double_star_prefix():
    assert match_glob("secrets.txt", "**/secrets.txt")
    assert match_glob("a/b/secrets.txt", "**/secrets.txt")
    assert match_glob("dist", "dist/**")
