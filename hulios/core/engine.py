#!/usr/bin/env python3
import os
import time
import logging

from hulios.core import constants
from hulios.core.state import StateFacts, derive_state
from hulios.network.dns_handler import DNSHandler
from hulios.network.firewall_handler import FirewallHandler
from hulios.network.relay import TorRelay
from hulios.security.protection import SecurityProtection
from hulios.utils.lock import TransitionLock
from hulios.utils.notify import Notifier


class Enforcer:
    """Moves the host between normal networking and Tor-only networking.

    Every public transition checks for root itself, takes the cross-process
    transition lock and probes the current state before touching anything.
    """

    def __init__(self, firewall=None, dns=None, relay=None, notifier=None, security=None,
                 lock=None, tor_user=constants.TOR_USER, detach_watcher=True, log_file=None,
                 restart_pause=constants.RESTART_PAUSE_SECONDS, sleep=time.sleep):
        self.security = security or SecurityProtection()
        self.notifier = notifier or Notifier()
        self.firewall = firewall or FirewallHandler()
        self.dns = dns or DNSHandler(security=self.security)
        self.relay = relay or TorRelay(security=self.security, notifier=self.notifier, tor_user=tor_user)
        self.lock = lock or TransitionLock()
        self.tor_user = tor_user
        self.detach_watcher = detach_watcher
        self.log_file = log_file
        self.restart_pause = restart_pause
        self.sleep = sleep

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def probe_state(self):
        facts = StateFacts(
            pid_marker=os.path.exists(self.relay.pid_file),
            relay_alive=self.relay.is_alive(),
            output_policy=self.firewall.output_policy(),
            dns_hijacked=self.dns.is_dns_hijacked(),
        )
        return derive_state(facts), facts

    def _log_entry_state(self, transition):
        state, facts = self.probe_state()
        logging.info(f"{transition}: current state is {state.value} ({facts})")
        return state

    # ------------------------------------------------------------------
    # Transition bodies (lock already held)
    # ------------------------------------------------------------------
    def _engage(self):
        self.relay.stop_watcher()
        self.relay.stop()
        self.dns.neutralize_native_resolver()
        self.firewall.enable_route_localnet()

        # Raises before any firewall change if tor does not come up
        self.relay.launch()

        self.firewall.apply_rules(self.tor_user)
        self.dns.take_dns_ownership()

        self.notifier.notify("HULIOS Started", "All traffic now routed through Tor 🧅", "normal")
        logging.info("HULIOS started successfully")

        self.relay.watch(detach=self.detach_watcher, log_file=self.log_file)

    def _disengage(self, quiet=False):
        self.relay.stop_watcher()
        # Open the gate before killing tor so nothing is stranded behind DROP
        self.firewall.flush_rules()
        self.relay.stop()
        self.dns.restore_dns()
        if quiet:
            return
        self.dns.restore_native_resolver()
        self.notifier.notify("HULIOS Stopped", "Normal network restored", "normal")
        logging.info("HULIOS stopped")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def start(self):
        self.security.ensure_root()
        with self.lock:
            self._log_entry_state("start")
            self._engage()

    def stop(self):
        self.security.ensure_root()
        with self.lock:
            self._log_entry_state("stop")
            self._disengage()

    def restart(self):
        self.security.ensure_root()
        with self.lock:
            self._log_entry_state("restart")
            logging.info("Restarting HULIOS...")
            self._disengage(quiet=True)
            self.sleep(self.restart_pause)
            self._engage()
            self.notifier.notify("HULIOS Restarted", "Tor connection refreshed 🔄", "normal")
            logging.info("HULIOS restarted")

    def flush(self):
        self.security.ensure_root()
        with self.lock:
            self._log_entry_state("flush")
            self.firewall.flush_rules()
            self.dns.restore_dns()
            self.dns.restore_native_resolver()
            self.notifier.notify("HULIOS Flushed", "Firewall rules cleared", "normal")
            logging.info("Firewall rules flushed and DNS restored")
