#!/usr/bin/env python3
"""Transparent Tor routing with iptables/ip6tables.

Security model:
    1. The IPv4 filter OUTPUT policy is DROP, so only listed exceptions leave.
    2. Only the Tor user reaches the internet directly.
    3. All DNS is redirected to the Tor DNSPort, all other TCP to the TransPort.
    4. Private networks are not exempt, which keeps DNS from leaking to the router.
    5. IPv6 is blocked outright since nothing redirects it.
"""
import dataclasses
import logging
from typing import List, Optional, Tuple

from hulios.core import constants
from hulios.core.errors import Outcome
from hulios.utils.commands import is_command_available, run_cmd

IPV4 = "ipv4"
IPV6 = "ipv6"

BINARIES = {IPV4: "iptables", IPV6: "ip6tables"}
LEGACY_BINARIES = {IPV4: "iptables-legacy", IPV6: "ip6tables-legacy"}

LOOPBACK_NET = "127.0.0.0/8"


@dataclasses.dataclass(frozen=True)
class FirewallRule:
    family: str
    table: str
    chain: str
    args: Tuple[str, ...]
    comment: str = ""

    def command(self, binary: Optional[str] = None) -> List[str]:
        binary = binary or BINARIES[self.family]
        return [binary, "-t", self.table, *self.args]


def _nat(*args, comment=""):
    return FirewallRule(IPV4, "nat", "OUTPUT", tuple(args), comment)


def _filter(*args, comment="", chain="OUTPUT", family=IPV4):
    return FirewallRule(family, "filter", chain, tuple(args), comment)


def build_ipv4_rules(tor_user, dns_port=constants.DNS_PORT, trans_port=constants.TRANS_PORT):
    """Ordered IPv4 rule set locking egress to the Tor user."""
    dns_port = str(dns_port)
    trans_port = str(trans_port)
    return [
        _nat("-A", "OUTPUT", "-m", "state", "--state", "ESTABLISHED", "-j", "RETURN",
             comment="leave already established connections alone"),
        _nat("-A", "OUTPUT", "-m", "owner", "--uid-owner", tor_user, "-j", "RETURN",
             comment="tor's own traffic is never redirected into itself"),
        # DNS must be captured before any destination based rule
        _nat("-A", "OUTPUT", "-p", "udp", "--dport", "53", "-j", "REDIRECT", "--to-ports", dns_port,
             comment="udp dns to DNSPort"),
        _nat("-A", "OUTPUT", "-p", "tcp", "--dport", "53", "-j", "REDIRECT", "--to-ports", dns_port,
             comment="tcp dns to DNSPort"),
        _nat("-A", "OUTPUT", "-d", LOOPBACK_NET, "-j", "RETURN",
             comment="loopback only, no private network exceptions"),
        _nat("-A", "OUTPUT", "-p", "tcp", "-j", "REDIRECT", "--to-ports", trans_port,
             comment="all other tcp to TransPort"),

        _filter("-P", "OUTPUT", "DROP", comment="deny by default"),
        _filter("-A", "OUTPUT", "-o", "lo", "-j", "ACCEPT", comment="loopback interface"),
        _filter("-A", "OUTPUT", "-d", LOOPBACK_NET, "-j", "ACCEPT", comment="redirected packets"),
        _filter("-A", "OUTPUT", "-m", "state", "--state", "ESTABLISHED,RELATED", "-j", "ACCEPT",
                comment="established/related"),
        _filter("-A", "OUTPUT", "-m", "owner", "--uid-owner", tor_user, "-j", "ACCEPT",
                comment="tor user reaches the internet"),
        _filter("-A", "OUTPUT", "-p", "udp", "--dport", "53", "-j", "DROP", comment="dns that bypassed nat"),
        _filter("-A", "OUTPUT", "-p", "tcp", "--dport", "53", "-j", "DROP", comment="dns that bypassed nat"),
        _filter("-A", "OUTPUT", "-p", "tcp", "--dport", "853", "-j", "DROP", comment="DoT"),
        _filter("-A", "OUTPUT", "-p", "udp", "--dport", "443", "-j", "DROP", comment="QUIC"),
        _filter("-A", "OUTPUT", "-j", "DROP", comment="everything else"),
    ]


def build_ipv6_rules():
    """IPv6 cannot be redirected, so it only keeps loopback and established flows."""
    rules = [_filter("-P", chain, "DROP", chain=chain, family=IPV6)
             for chain in ("OUTPUT", "INPUT", "FORWARD")]
    rules += [
        _filter("-A", "OUTPUT", "-o", "lo", "-j", "ACCEPT", family=IPV6),
        _filter("-A", "INPUT", "-i", "lo", "-j", "ACCEPT", chain="INPUT", family=IPV6),
        _filter("-A", "OUTPUT", "-m", "state", "--state", "ESTABLISHED,RELATED", "-j", "ACCEPT",
                family=IPV6),
        _filter("-A", "INPUT", "-m", "state", "--state", "ESTABLISHED,RELATED", "-j", "ACCEPT",
                chain="INPUT", family=IPV6),
        _filter("-A", "OUTPUT", "-j", "DROP", family=IPV6),
        _filter("-A", "INPUT", "-j", "DROP", chain="INPUT", family=IPV6),
    ]
    return rules


def build_flush_rules():
    rules = []
    for family in (IPV4, IPV6):
        rules += [_filter("-P", chain, "ACCEPT", chain=chain, family=family)
                  for chain in ("OUTPUT", "INPUT", "FORWARD")]
        rules.append(FirewallRule(family, "nat", "OUTPUT", ("-F", "OUTPUT")))
        rules.append(_filter("-F", "OUTPUT", family=family))
    rules.append(_filter("-F", "INPUT", chain="INPUT", family=IPV6))
    return rules


def build_legacy_flush_rules():
    rules = []
    for family in (IPV4, IPV6):
        rules.append(FirewallRule(family, "nat", "OUTPUT", ("-F", "OUTPUT")))
        rules.append(_filter("-F", "OUTPUT", family=family))
    return rules


class FirewallHandler:
    def __init__(self, runner=run_cmd, command_available=is_command_available,
                 dns_port=constants.DNS_PORT, trans_port=constants.TRANS_PORT):
        self.runner = runner
        self.command_available = command_available
        self.dns_port = dns_port
        self.trans_port = trans_port

    def _apply(self, rule, binary=None):
        """Run one rule; failures are logged and never stop the sequence"""
        result = self.runner(rule.command(binary))
        if result.ok:
            return Outcome.SUCCESS

        cmd = " ".join(rule.command(binary))
        detail = result.stderr.strip() or f"exit status {result.returncode}"
        if rule.family == IPV4:
            logging.error(f"{cmd} failed: {detail}")
        else:
            logging.debug(f"{cmd} failed: {detail}")
        return Outcome.FAILED_NONFATAL

    def apply_rules(self, tor_user=constants.TOR_USER):
        """Flush, then lock all egress to the Tor user"""
        self.flush_rules()

        outcomes = [self._apply(rule) for rule in
                    build_ipv4_rules(tor_user, self.dns_port, self.trans_port)]
        ipv6_outcomes = [self._apply(rule) for rule in build_ipv6_rules()]
        if not Outcome.combine(ipv6_outcomes).ok:
            logging.warning("Some IPv6 rules could not be applied")

        logging.info("Firewall rules applied (default-deny, Tor-only)")
        return Outcome.combine(outcomes)

    def flush_rules(self):
        """Reset policies to ACCEPT and clear the chains HULIOS writes to"""
        outcomes = [self._apply(rule) for rule in build_flush_rules()]

        for family in (IPV4, IPV6):
            legacy = LEGACY_BINARIES[family]
            if not self.command_available(legacy):
                continue
            for rule in build_legacy_flush_rules():
                if rule.family == family:
                    self._apply(rule, binary=legacy)

        logging.info("Firewall rules flushed, policies reset to ACCEPT")
        return Outcome.combine(outcomes)

    def enable_route_localnet(self):
        """Allow NAT'd packets to target 127.0.0.0/8"""
        result = self.runner(["sysctl", "-w", "net.ipv4.conf.all.route_localnet=1"])
        if not result.ok:
            logging.warning(f"Failed to enable route_localnet: {result.stderr.strip()}")
        return result.outcome

    def list_rules(self, table="filter", chain="OUTPUT", family=IPV4):
        result = self.runner([BINARIES[family], "-t", table, "-S", chain])
        if not result.ok:
            return None
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def output_policy(self, family=IPV4):
        """Default policy of filter/OUTPUT, or None when it cannot be read"""
        rules = self.list_rules("filter", "OUTPUT", family)
        if rules is None:
            return None
        for line in rules:
            parts = line.split()
            if len(parts) == 3 and parts[0] == "-P" and parts[1] == "OUTPUT":
                return parts[2]
        return None
