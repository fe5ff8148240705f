"""Pytest configuration and host fakes for HULIOS tests."""

import sys
from pathlib import Path

import pytest

# Ensure the hulios package is importable from a source checkout
root_path = str(Path(__file__).parent.parent)
if root_path not in sys.path:
    sys.path.insert(0, root_path)

from hulios.core.errors import Outcome  # noqa: E402
from hulios.utils.commands import CommandResult  # noqa: E402

CHAINS = ("INPUT", "OUTPUT", "FORWARD")
FAMILIES = {"iptables": "ipv4", "ip6tables": "ipv6"}


class FakeIptables:
    """In-memory model of iptables/ip6tables: policies and appended rules."""

    def __init__(self):
        self.tables = {}
        for family in FAMILIES.values():
            for table in ("filter", "nat"):
                self.tables[(family, table)] = {
                    "policies": {chain: "ACCEPT" for chain in CHAINS},
                    "rules": {chain: [] for chain in CHAINS},
                }

    def handles(self, cmd):
        return cmd[0] in FAMILIES

    def run(self, cmd):
        family = FAMILIES[cmd[0]]
        args = list(cmd[1:])
        table = "filter"
        if args[:1] == ["-t"]:
            table = args[1]
            args = args[2:]
        state = self.tables[(family, table)]
        op, chain, rest = args[0], args[1], args[2:]

        if op == "-P":
            state["policies"][chain] = rest[0]
            return ""
        if op == "-A":
            state["rules"][chain].append(" ".join(rest))
            return ""
        if op == "-F":
            state["rules"][chain] = []
            return ""
        if op == "-S":
            lines = []
            if table == "filter":
                lines.append(f"-P {chain} {state['policies'][chain]}")
            lines += [f"-A {chain} {rule}" for rule in state["rules"][chain]]
            return "\n".join(lines) + "\n"
        raise ValueError(f"unsupported iptables op {op}")

    def policy(self, chain="OUTPUT", family="ipv4"):
        return self.tables[(family, "filter")]["policies"][chain]

    def rules(self, table="filter", chain="OUTPUT", family="ipv4"):
        return list(self.tables[(family, table)]["rules"][chain])

    def snapshot(self):
        return {
            key: {"policies": dict(value["policies"]),
                  "rules": {c: list(r) for c, r in value["rules"].items()}}
            for key, value in self.tables.items()
        }


class FakeRunner:
    """Stand-in for run_cmd that records commands instead of running them."""

    def __init__(self, iptables=None, failing=(), outputs=None):
        self.calls = []
        self.iptables = iptables
        self.failing = set(failing)
        self.outputs = dict(outputs or {})

    def __call__(self, cmd, fatal=False):
        cmd = list(cmd)
        self.calls.append(cmd)
        failed = Outcome.FAILED_FATAL if fatal else Outcome.FAILED_NONFATAL

        if cmd[0] in self.failing or " ".join(cmd) in self.failing:
            return CommandResult(cmd=cmd, returncode=1, stderr="simulated failure", outcome=failed)
        if self.iptables is not None and self.iptables.handles(cmd):
            stdout = self.iptables.run(cmd)
            return CommandResult(cmd=cmd, returncode=0, stdout=stdout)
        return CommandResult(cmd=cmd, returncode=0, stdout=self.outputs.get(cmd[0], ""))

    def commands_for(self, binary):
        return [c for c in self.calls if c[0] == binary]


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, title, body, urgency="normal"):
        self.sent.append((title, body, urgency))
        return True

    @property
    def titles(self):
        return [title for title, _, _ in self.sent]


class FakeSecurity:
    def __init__(self, root=True):
        self.root = root
        self.protected = []

    def is_root(self):
        return self.root

    def ensure_root(self):
        from hulios.core.errors import PrivilegeError
        if not self.root:
            raise PrivilegeError("HULIOS must be run as root.")

    def protect_file(self, file_path, protect=True):
        self.protected.append((file_path, protect))
        return Outcome.SUCCESS


@pytest.fixture
def iptables():
    return FakeIptables()


@pytest.fixture
def runner(iptables):
    return FakeRunner(iptables=iptables, failing={"pgrep"})


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def security():
    return FakeSecurity()
