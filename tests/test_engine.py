"""Tests for the enforcement transitions."""

import os
import subprocess

import pytest

from conftest import FakeIptables, FakeRunner, FakeSecurity, RecordingNotifier
from hulios.core.engine import Enforcer
from hulios.core.errors import Outcome, PrivilegeError, RelayStartError, TransitionInProgressError
from hulios.core.state import EnforcementState
from hulios.file_handlers.resolv_file import ResolvFileHandler
from hulios.network.dns_handler import DNSHandler
from hulios.network.firewall_handler import FirewallHandler
from hulios.network.relay import TorRelay, pid_is_running
from hulios.utils.lock import TransitionLock

ORIGINAL_RESOLV = "nameserver 192.168.1.1\noptions rotate\n"


class SpyFirewall:
    def __init__(self, log):
        self.log = log
        self.policy = "ACCEPT"

    def enable_route_localnet(self):
        self.log.append("firewall.route_localnet")
        return Outcome.SUCCESS

    def apply_rules(self, tor_user):
        self.log.append(f"firewall.apply:{tor_user}")
        self.policy = "DROP"
        return Outcome.SUCCESS

    def flush_rules(self):
        self.log.append("firewall.flush")
        self.policy = "ACCEPT"
        return Outcome.SUCCESS

    def output_policy(self):
        return self.policy


class SpyDNS:
    def __init__(self, log):
        self.log = log

    def neutralize_native_resolver(self):
        self.log.append("dns.neutralize")

    def restore_native_resolver(self):
        self.log.append("dns.restore_native")

    def take_dns_ownership(self):
        self.log.append("dns.take")

    def restore_dns(self):
        self.log.append("dns.restore")

    def is_dns_hijacked(self):
        return False


class SpyRelay:
    def __init__(self, log, tmp_path, launch_error=None):
        self.log = log
        self.pid_file = str(tmp_path / "tor.pid")
        self.launch_error = launch_error
        self.watch_detach = None

    def stop_watcher(self):
        self.log.append("relay.stop_watcher")

    def stop(self):
        self.log.append("relay.stop")

    def launch(self):
        self.log.append("relay.launch")
        if self.launch_error:
            raise self.launch_error
        return 4242

    def is_alive(self):
        return False

    def watch(self, detach=False, log_file=None):
        self.watch_detach = detach
        self.log.append("relay.watch")


@pytest.fixture
def log():
    return []


@pytest.fixture
def spy_enforcer(tmp_path, log, notifier):
    def build(root=True, launch_error=None):
        return Enforcer(
            firewall=SpyFirewall(log),
            dns=SpyDNS(log),
            relay=SpyRelay(log, tmp_path, launch_error=launch_error),
            notifier=notifier,
            security=FakeSecurity(root=root),
            lock=TransitionLock(str(tmp_path / "hulios.lock")),
            detach_watcher=False,
            sleep=lambda seconds: log.append(f"sleep:{seconds}"),
        )
    return build


class TestPrivilege:
    @pytest.mark.parametrize("transition", ["start", "stop", "restart", "flush"])
    def test_every_transition_requires_root(self, spy_enforcer, log, transition):
        enforcer = spy_enforcer(root=False)
        with pytest.raises(PrivilegeError, match="must be run as root"):
            getattr(enforcer, transition)()
        assert log == []


class TestTransitionOrder:
    def test_engage_order(self, spy_enforcer, log, notifier):
        spy_enforcer().start()
        assert log == [
            "relay.stop_watcher",
            "relay.stop",
            "dns.neutralize",
            "firewall.route_localnet",
            "relay.launch",
            "firewall.apply:tor",
            "dns.take",
            "relay.watch",
        ]
        assert notifier.titles == ["HULIOS Started"]

    def test_engage_aborts_before_firewall_when_relay_dies(self, spy_enforcer, log, notifier):
        enforcer = spy_enforcer(launch_error=RelayStartError("Tor process died during startup"))
        with pytest.raises(RelayStartError):
            enforcer.start()
        assert "firewall.apply:tor" not in log
        assert "dns.take" not in log
        assert "relay.watch" not in log
        assert "HULIOS Started" not in notifier.titles

    def test_disengage_opens_gate_before_killing_relay(self, spy_enforcer, log, notifier):
        spy_enforcer().stop()
        assert log == [
            "relay.stop_watcher",
            "firewall.flush",
            "relay.stop",
            "dns.restore",
            "dns.restore_native",
        ]
        assert notifier.titles == ["HULIOS Stopped"]

    def test_reengage_sends_one_final_restart_alert(self, spy_enforcer, log, notifier):
        spy_enforcer().restart()
        assert log[:5] == ["relay.stop_watcher", "firewall.flush", "relay.stop", "dns.restore", "sleep:2"]
        assert "dns.restore_native" not in log
        assert log[-1] == "relay.watch"
        assert notifier.titles == ["HULIOS Started", "HULIOS Restarted"]

    def test_flush_leaves_relay_alone(self, spy_enforcer, log, notifier):
        spy_enforcer().flush()
        assert log == ["firewall.flush", "dns.restore", "dns.restore_native"]
        assert notifier.titles == ["HULIOS Flushed"]

    def test_lock_released_after_failure(self, spy_enforcer, tmp_path):
        enforcer = spy_enforcer(launch_error=RelayStartError("boom"))
        with pytest.raises(RelayStartError):
            enforcer.start()
        assert not enforcer.lock.is_locked()


class TestTransitionLock:
    def test_held_lock_blocks_transition(self, spy_enforcer, log, tmp_path):
        holder = subprocess.Popen(["sleep", "30"])
        try:
            (tmp_path / "hulios.lock").write_text(f"{holder.pid}\n")
            enforcer = spy_enforcer()
            enforcer.lock.timeout = 0.2
            with pytest.raises(TransitionInProgressError):
                enforcer.stop()
            assert log == []
        finally:
            holder.kill()
            holder.wait()

    def test_stale_lock_is_broken(self, spy_enforcer, log, tmp_path):
        dead = subprocess.Popen(["true"])
        dead.wait()
        (tmp_path / "hulios.lock").write_text(f"{dead.pid}\n")
        spy_enforcer().flush()
        assert log == ["firewall.flush", "dns.restore", "dns.restore_native"]
        assert not (tmp_path / "hulios.lock").exists()


class TestScenario:
    """Engage then disengage on a modelled host."""

    @pytest.fixture
    def host(self, tmp_path):
        resolv = tmp_path / "resolv.conf"
        resolv.write_text(ORIGINAL_RESOLV)
        tor = tmp_path / "fake-tor"
        tor.write_text("#!/bin/sh\nexec sleep 30\n")
        tor.chmod(0o755)

        iptables = FakeIptables()
        runner = FakeRunner(iptables=iptables, failing={"pgrep"})
        notifier = RecordingNotifier()
        security = FakeSecurity()
        pid_file = str(tmp_path / "tor.pid")

        relay = TorRelay(
            runner=runner, security=security, notifier=notifier, tor_binary=str(tor),
            data_dir=str(tmp_path / "data"), torrc_path=str(tmp_path / "torrc"),
            log_path=str(tmp_path / "tor.log"), pid_file=pid_file,
            watcher_pid_file=str(tmp_path / "watcher.pid"), bootstrap_wait=0,
            sleep=lambda seconds: None, watcher_grace=60,
        )
        dns = DNSHandler(
            resolv_handler=ResolvFileHandler(
                resolv_path=str(resolv), resolv_backup=str(tmp_path / "resolv.backup"),
                candidates=(str(tmp_path / "missing"), str(resolv)),
                stub_path=str(tmp_path / "stub")),
            security=security, runner=runner, tor_pid_file=pid_file,
        )
        enforcer = Enforcer(
            firewall=FirewallHandler(runner=runner, command_available=lambda name: False),
            dns=dns, relay=relay, notifier=notifier, security=security,
            lock=TransitionLock(str(tmp_path / "hulios.lock")),
            detach_watcher=False, sleep=lambda seconds: None,
        )
        yield {"enforcer": enforcer, "iptables": iptables, "resolv": resolv, "pid_file": pid_file,
               "runner": runner, "notifier": notifier}
        relay.stop_watcher()
        relay.stop()

    def test_engage_then_disengage(self, host):
        enforcer, iptables, resolv = host["enforcer"], host["iptables"], host["resolv"]

        assert enforcer.probe_state()[0] is EnforcementState.DISENGAGED
        enforcer.start()

        assert "nameserver 127.0.0.1" in resolv.read_text()
        assert iptables.policy("OUTPUT") == "DROP"
        assert "-m owner --uid-owner tor -j ACCEPT" in iptables.rules()
        pid = int(open(host["pid_file"]).read())
        assert pid_is_running(pid)
        assert enforcer.probe_state()[0] is EnforcementState.ENGAGED

        enforcer.stop()

        assert resolv.read_text() == ORIGINAL_RESOLV
        assert iptables.policy("OUTPUT") == "ACCEPT"
        assert iptables.rules() == []
        assert not os.path.exists(host["pid_file"])
        assert not pid_is_running(pid)
        assert ["systemctl", "start", "systemd-resolved"] in host["runner"].calls
        assert enforcer.probe_state()[0] is EnforcementState.DISENGAGED
        assert host["notifier"].titles == ["HULIOS Started", "HULIOS Stopped"]

    def test_engage_twice_keeps_single_rule_set(self, host):
        enforcer, iptables = host["enforcer"], host["iptables"]
        enforcer.start()
        first = iptables.snapshot()
        enforcer.start()
        assert iptables.snapshot() == first
        enforcer.stop()
        assert host["resolv"].read_text() == ORIGINAL_RESOLV
