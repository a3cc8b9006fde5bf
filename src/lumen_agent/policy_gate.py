"""Safety gate: classify shell commands before they run.

Every command gets a fresh PolicyVerdict:

- blocked: matched a destructive rule. Absolute, no flag can override it.
- requires-approval: mutates state, touches the network, or escalates privilege.
- auto-approved: read-only, or approval was pre-granted by configuration.

The rule tables are versioned so each entry can be regression-tested on its own.
"""

import os
import re
import shlex
from dataclasses import dataclass
from typing import Callable, List, Literal, Optional, Pattern, Tuple

RULESET_VERSION = "2026.10.1"

BLOCKED = "blocked"
REQUIRES_APPROVAL = "requires-approval"
AUTO_APPROVED = "auto-approved"

Classification = Literal["blocked", "requires-approval", "auto-approved"]
RiskLevel = Literal["low", "medium", "high", "critical"]


@dataclass(frozen=True)
class PolicyRule:
    """A single versioned rule: regex, structural check, or both."""
    rule_id: str
    description: str
    severity: str
    pattern: Optional[Pattern] = None
    check: Optional[Callable[[str], bool]] = None

    def matches(self, command: str) -> bool:
        if self.pattern is not None and self.pattern.search(command):
            return True
        if self.check is not None and self.check(command):
            return True
        return False


@dataclass(frozen=True)
class PolicyVerdict:
    """Outcome of classifying one command. Never cached."""
    classification: str
    reason: str
    matched_rule: Optional[str] = None
    risk: str = "low"
    ruleset_version: str = RULESET_VERSION

    @property
    def is_blocked(self) -> bool:
        return self.classification == BLOCKED

    @property
    def needs_approval(self) -> bool:
        return self.classification == REQUIRES_APPROVAL

    def to_dict(self) -> dict:
        return {
            "classification": self.classification,
            "reason": self.reason,
            "matched_rule": self.matched_rule,
            "risk": self.risk,
            "ruleset_version": self.ruleset_version,
        }


# =============================================================================
# COMMAND PARSING HELPERS
# =============================================================================

_SEGMENT_SPLIT_RE = re.compile(r"\|\||&&|;|\n|(?<![>&])&(?![>&])|\|")

# Wrappers that run the next word as the real command
_PREFIX_COMMANDS = {"sudo", "doas", "env", "nohup", "nice", "time", "command", "exec", "xargs"}
_VALUE_OPTIONS = {"-u", "-g", "-C", "-h", "-p", "-U"}

_SYSTEM_DIRS = {
    "/bin", "/boot", "/dev", "/etc", "/lib", "/lib64", "/opt", "/proc",
    "/root", "/sbin", "/sys", "/usr", "/var", "/home",
}

_HOME_TARGETS = {"~", "~/", "~/*", "$HOME", "${HOME}", "$HOME/", "$HOME/*", "${HOME}/*"}


def split_segments(command: str) -> List[str]:
    """Split on chain operators and pipes. Quoting is not respected."""
    return [s.strip() for s in _SEGMENT_SPLIT_RE.split(command) if s.strip()]


def segment_args(segment: str) -> List[str]:
    """Argument vector for one segment with wrapper commands stripped."""
    try:
        args = shlex.split(segment)
    except ValueError:
        args = segment.split()
    while args:
        base = os.path.basename(args[0])
        if base in _PREFIX_COMMANDS:
            args = args[1:]
            # sudo -u user / env FOO=bar
            while args and (args[0].startswith("-") or "=" in args[0] or args[0].isdigit()):
                takes_value = args[0] in _VALUE_OPTIONS
                args = args[2:] if takes_value else args[1:]
            continue
        break
    return args


def _is_recursive_root_delete(command: str) -> bool:
    for segment in split_segments(command):
        args = segment_args(segment)
        if not args or os.path.basename(args[0]) != "rm":
            continue
        recursive = False
        no_preserve = False
        targets = []
        for arg in args[1:]:
            if arg in ("--recursive",):
                recursive = True
            elif arg == "--no-preserve-root":
                no_preserve = True
            elif arg.startswith("-") and not arg.startswith("--"):
                if "r" in arg or "R" in arg:
                    recursive = True
            elif not arg.startswith("-"):
                targets.append(arg)
        if not recursive:
            continue
        if no_preserve:
            return True
        for target in targets:
            if target in _HOME_TARGETS:
                return True
            normalized = target.rstrip("/")
            if normalized.endswith("/*"):
                normalized = normalized[:-2]
            if normalized in ("", "/.", "/..") or normalized in _SYSTEM_DIRS:
                return True
    return False


def _is_power_state_change(command: str) -> bool:
    for segment in split_segments(command):
        args = segment_args(segment)
        if not args:
            continue
        base = os.path.basename(args[0])
        if base in ("shutdown", "reboot", "halt", "poweroff"):
            return True
        if base in ("init", "telinit") and len(args) > 1 and args[1] in ("0", "6"):
            return True
    return False


_BLOCK_DEVICE = r"/dev/(?:[shv]d[a-z]\d*|nvme\d+n\d+(?:p\d+)?|xvd[a-z]\d*|mmcblk\d+(?:p\d+)?|disk\d+(?:s\d+)?|mapper/\S+)"
_INTERPRETERS = r"(?:ba|z|da|k|fi)?sh|python[0-9.]*|perl|ruby|node|php"
_AUTH_FILES = r"/etc/(?:passwd|shadow|group|gshadow|sudoers(?:\.d/\S*)?)\b"


# =============================================================================
# BLOCKED RULES (absolute)
# =============================================================================

BLOCKED_RULES: Tuple[PolicyRule, ...] = (
    PolicyRule(
        rule_id="recursive-root-delete",
        description="Recursive deletion of /, the home directory, or a top-level system directory",
        severity="critical",
        check=_is_recursive_root_delete,
    ),
    PolicyRule(
        rule_id="fork-bomb",
        description="Fork bomb",
        severity="critical",
        pattern=re.compile(
            r":\(\)\s*\{.*:\s*\|\s*:.*&.*\}\s*;?\s*:"
            r"|\b(\w+)\(\)\s*\{\s*\1\s*\|\s*\1\s*&\s*\}\s*;\s*\1\b"
        ),
    ),
    PolicyRule(
        rule_id="raw-block-device-write",
        description="Raw write to a block device",
        severity="critical",
        pattern=re.compile(
            r"\bdd\b[^;&|\n]*\bof=" + _BLOCK_DEVICE
            + r"|>{1,2}\s*" + _BLOCK_DEVICE
            + r"|\b(?:shred|blkdiscard)\b[^;&|\n]*" + _BLOCK_DEVICE
        ),
    ),
    PolicyRule(
        rule_id="filesystem-format",
        description="Filesystem formatting or partition table rewrite",
        severity="critical",
        pattern=re.compile(
            r"(?:^|[;&|\s])(?:sudo\s+)?(?:mkfs(?:\.\w+)?|mke2fs|mkswap|wipefs)\b"
            r"|\b(?:fdisk|sfdisk|parted|sgdisk)\b[^;&|\n]*" + _BLOCK_DEVICE
        ),
    ),
    PolicyRule(
        rule_id="auth-file-tampering",
        description="Overwriting, moving or deleting core authentication files",
        severity="critical",
        pattern=re.compile(
            r">{1,2}\s*" + _AUTH_FILES
            + r"|\btee\b(?:\s+-\w+)*\s+" + _AUTH_FILES
            + r"|\b(?:rm|mv|chmod|chown|truncate|shred|ln)\b[^;&|\n]*\s" + _AUTH_FILES
            + r"|\bsed\s+(?:-\w*\s+)*-i\S*[^;&|\n]*\s" + _AUTH_FILES
        ),
    ),
    PolicyRule(
        rule_id="root-permission-change",
        description="Recursive permission or ownership change on /",
        severity="critical",
        pattern=re.compile(r"\b(?:chmod|chown|chgrp)\s+(?:-\S+\s+)*-\w*R\w*\s+(?:\S+\s+)?/(?:\*)?(?=\s|$|;|&|\|)"),
    ),
    PolicyRule(
        rule_id="remote-script-pipe",
        description="Remote script piped into an interpreter",
        severity="critical",
        pattern=re.compile(
            r"\b(?:curl|wget|fetch)\b[^|;&\n]*\|\s*(?:sudo\s+(?:-\S+\s+)*)?(?:" + _INTERPRETERS + r")\b"
            r"|\b(?:" + _INTERPRETERS + r")\b[^;&|\n]*(?:<\(|\$\(|`)\s*(?:curl|wget|fetch)\b"
        ),
    ),
    PolicyRule(
        rule_id="power-state-change",
        description="Shutdown, reboot or halt of the host",
        severity="critical",
        check=_is_power_state_change,
    ),
)


# =============================================================================
# ELEVATED RULES (high risk, approval needed even with auto_approve)
# =============================================================================

ELEVATED_RULES: Tuple[PolicyRule, ...] = (
    PolicyRule(
        rule_id="privilege-escalation",
        description="Runs with elevated privileges",
        severity="high",
        pattern=re.compile(r"(?:^|[;&|\s(])(?:sudo|su|doas|pkexec|runas)(?=\s|$)"),
    ),
    PolicyRule(
        rule_id="recursive-delete",
        description="Recursive or forced deletion",
        severity="high",
        pattern=re.compile(r"(?:^|[;&|\s])rm\s+(?:[^;&|\n]*\s)?(?:-\w*[rRf]\w*|--recursive|--force)\b"),
    ),
    PolicyRule(
        rule_id="dynamic-evaluation",
        description="Evaluates dynamically built shell code",
        severity="high",
        pattern=re.compile(r"(?:^|[;&|\s])(?:eval|source)\s|(?:^|[;&|\s])(?:bash|sh|zsh)\s+-c\b"),
    ),
    PolicyRule(
        rule_id="process-kill",
        description="Kills processes",
        severity="high",
        pattern=re.compile(r"(?:^|[;&|\s])(?:kill|killall|pkill)\s"),
    ),
    PolicyRule(
        rule_id="system-path-write",
        description="Writes into a system directory",
        severity="high",
        pattern=re.compile(r">{1,2}\s*/(?:etc|usr|boot|sys|proc|lib|sbin|bin)/"),
    ),
)


# =============================================================================
# READ-ONLY / NETWORK CLASSIFICATION
# =============================================================================

READ_ONLY_COMMANDS = frozenset({
    "ls", "cat", "head", "tail", "less", "more", "grep", "egrep", "fgrep", "rg",
    "pwd", "echo", "printf", "whoami", "id", "uname", "df", "du", "ps",
    "wc", "cut", "tr", "which", "whereis", "type", "file", "stat",
    "uptime", "free", "diff", "cmp", "md5sum", "sha1sum",
    "sha256sum", "basename", "dirname", "realpath", "readlink", "true", "false",
    "test", "[", "jq", "column", "nl", "lsblk", "lscpu", "top", "vmstat",
})

NETWORK_COMMANDS = frozenset({
    "curl", "wget", "ssh", "scp", "sftp", "rsync", "nc", "ncat", "netcat", "telnet",
    "ftp", "ping", "traceroute", "dig", "nslookup", "host", "whois", "nmap",
})

# Subcommands that keep a tool read-only
READ_ONLY_SUBCOMMANDS = {
    "git": {"status", "log", "diff", "show", "branch", "remote", "rev-parse", "describe", "blame", "ls-files", "tag"},
    "docker": {"ps", "images", "inspect", "logs", "version", "info"},
    "kubectl": {"get", "describe", "logs", "version", "explain"},
    "systemctl": {"status", "list-units", "is-active", "is-enabled", "show"},
    "pip": {"list", "show", "freeze", "--version"},
    "npm": {"ls", "list", "view", "--version"},
}

NETWORK_SUBCOMMANDS = {
    "git": {"clone", "fetch", "pull", "push", "ls-remote"},
    "pip": {"install", "download"},
    "npm": {"install", "ci", "publish"},
    "docker": {"pull", "push", "login"},
}

_FILE_REDIRECT_RE = re.compile(r"(?<![0-9&])>{1,2}(?!&)\s*(?!/dev/null\b)\S|[0-9]>{1,2}\s*(?!/dev/null\b|&)\S")
# $(...), backticks and process substitution <(...) / >(...)
_SUBSTITUTION_RE = re.compile(r"`[^`]+`|\$\([^)]*\)|[<>]\(")
_FIND_MUTATING = {"-delete", "-exec", "-execdir", "-ok", "-okdir", "-fprint", "-fprint0", "-fprintf", "-fls"}

# git branch / tag list refs by default but also create, rename and delete them
_GIT_REF_SUBCOMMANDS = {
    "branch": {
        "short": set("dDmMcCfu"),
        "long": {"--delete", "--move", "--copy", "--force", "--set-upstream-to",
                 "--unset-upstream", "--edit-description", "--track", "--no-track"},
    },
    "tag": {
        "short": set("dfasmuF"),
        "long": {"--delete", "--force", "--annotate", "--sign", "--message",
                 "--file", "--local-user", "--create-reflog"},
    },
}
_GIT_LIST_FLAGS = {"-l", "--list"}
_GIT_REMOTE_READ_VERBS = {"show", "get-url"}


def _positional(args: List[str]) -> List[str]:
    return [a for a in args if not a.startswith("-")]


def _has_short_flag(args: List[str], letters) -> bool:
    """True if any short-option cluster (e.g. -rD) contains one of letters."""
    return any(
        a.startswith("-") and not a.startswith("--") and set(a[1:]) & set(letters)
        for a in args
    )


def _git_effect(sub: str, rest: List[str]) -> str:
    if any(a.startswith("--output") for a in rest):
        return "mutate"
    if sub in _GIT_REF_SUBCOMMANDS:
        flags = _GIT_REF_SUBCOMMANDS[sub]
        if _has_short_flag(rest, flags["short"]):
            return "mutate"
        if any(a.split("=", 1)[0] in flags["long"] for a in rest):
            return "mutate"
        # A bare name creates a ref unless the call is an explicit listing
        if _positional(rest) and not _GIT_LIST_FLAGS & set(rest):
            return "mutate"
        return "read"
    if sub == "remote":
        verbs = _positional(rest)
        return "read" if not verbs or verbs[0] in _GIT_REMOTE_READ_VERBS else "mutate"
    return "read" if sub in READ_ONLY_SUBCOMMANDS["git"] else "mutate"


def _argument_effect(base: str, rest: List[str]) -> Optional[str]:
    """Tools that only read unless given particular arguments."""
    if base == "sort":
        writes = _has_short_flag(rest, "o") or any(a.startswith("--output") for a in rest)
        return "mutate" if writes else "read"
    if base == "uniq":
        # uniq INPUT OUTPUT writes OUTPUT
        return "mutate" if len(_positional(rest)) >= 2 else "read"
    if base == "tree":
        return "mutate" if _has_short_flag(rest, "o") else "read"
    if base == "date":
        # date -s / --set / MMDDhhmm set the clock; only +FORMAT and flags read
        sets = _has_short_flag(rest, "s") or any(a.startswith("--set") for a in rest)
        if sets or any(not a.startswith(("+", "-")) for a in rest):
            return "mutate"
        return "read"
    if base == "hostname":
        return "mutate" if _positional(rest) else "read"
    if base == "history":
        return "mutate" if rest else "read"
    return None


def _segment_effect(segment: str) -> str:
    """Return 'read', 'network' or 'mutate' for one pipeline segment."""
    args = segment_args(segment)
    if not args:
        return "read"
    base = os.path.basename(args[0])
    sub = next((a for a in args[1:] if not a.startswith("-")), args[1] if len(args) > 1 else "")
    rest = args[args.index(sub, 1) + 1:] if sub else []

    if base in NETWORK_COMMANDS:
        return "network"
    if base in NETWORK_SUBCOMMANDS and sub in NETWORK_SUBCOMMANDS[base]:
        return "network"
    if base == "git":
        return _git_effect(sub, rest)
    if base in READ_ONLY_SUBCOMMANDS:
        return "read" if sub in READ_ONLY_SUBCOMMANDS[base] else "mutate"
    if base == "find":
        return "mutate" if _FIND_MUTATING & set(args[1:]) else "read"
    if base == "sed":
        return "mutate" if any(a.startswith("-i") or a == "--in-place" for a in args[1:]) else "read"
    effect = _argument_effect(base, args[1:])
    if effect is not None:
        return effect
    if base in READ_ONLY_COMMANDS:
        return "read"
    return "mutate"


class PolicyGate:
    """Classifies commands against the versioned rule tables."""

    def __init__(
        self,
        auto_approve: bool = False,
        allow_dangerous: bool = False,
        blocked_rules: Tuple[PolicyRule, ...] = BLOCKED_RULES,
        elevated_rules: Tuple[PolicyRule, ...] = ELEVATED_RULES,
    ):
        self.auto_approve = auto_approve
        self.allow_dangerous = allow_dangerous
        self.blocked_rules = blocked_rules
        self.elevated_rules = elevated_rules

    def classify(self, command: str) -> PolicyVerdict:
        """
        Classify a command.

        Blocked rules are checked first and win unconditionally. The
        auto_approve / allow_dangerous flags only move a command between
        requires-approval and auto-approved.
        """
        command = (command or "").strip()
        if not command:
            return PolicyVerdict(
                classification=REQUIRES_APPROVAL,
                reason="Empty command",
                risk="medium",
            )

        for rule in self.blocked_rules:
            if rule.matches(command):
                return PolicyVerdict(
                    classification=BLOCKED,
                    reason=rule.description,
                    matched_rule=rule.rule_id,
                    risk=rule.severity,
                )

        for rule in self.elevated_rules:
            if rule.matches(command):
                approved = self.auto_approve and self.allow_dangerous
                return PolicyVerdict(
                    classification=AUTO_APPROVED if approved else REQUIRES_APPROVAL,
                    reason=rule.description,
                    matched_rule=rule.rule_id,
                    risk=rule.severity,
                )

        effects = {_segment_effect(s) for s in split_segments(command)}
        if _FILE_REDIRECT_RE.search(command):
            effects.add("mutate")
        if _SUBSTITUTION_RE.search(command):
            effects.add("mutate")

        if effects <= {"read"}:
            return PolicyVerdict(
                classification=AUTO_APPROVED,
                reason="Read-only command",
                risk="low",
            )

        if "network" in effects and "mutate" in effects:
            reason = "Mutates state and touches the network"
        elif "network" in effects:
            reason = "Touches the network"
        else:
            reason = "Mutates state or is not known to be read-only"

        return PolicyVerdict(
            classification=AUTO_APPROVED if self.auto_approve else REQUIRES_APPROVAL,
            reason=reason,
            risk="medium",
        )


def classify(command: str, auto_approve: bool = False, allow_dangerous: bool = False) -> PolicyVerdict:
    """Classify with a throwaway gate."""
    return PolicyGate(auto_approve=auto_approve, allow_dangerous=allow_dangerous).classify(command)


def all_rules() -> List[PolicyRule]:
    return list(BLOCKED_RULES) + list(ELEVATED_RULES)
