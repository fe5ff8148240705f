#!/usr/bin/env python3
import os
import logging

from hulios.core import constants
from hulios.core.errors import ConfigWriteError


class TorrcHandler:
    def __init__(self, torrc_path=constants.TORRC_PATH, tor_user=constants.TOR_USER,
                 data_dir=constants.TOR_DATA_DIR, log_path=constants.TOR_LOG_PATH,
                 socks_port=constants.SOCKS_PORT, trans_port=constants.TRANS_PORT,
                 dns_port=constants.DNS_PORT, virtual_addr_network=constants.VIRTUAL_ADDR_NETWORK):
        self.torrc_path = torrc_path
        self.tor_user = tor_user
        self.data_dir = data_dir
        self.log_path = log_path
        self.socks_port = socks_port
        self.trans_port = trans_port
        self.dns_port = dns_port
        self.virtual_addr_network = virtual_addr_network

    def render(self):
        lines = [
            "RunAsDaemon 1",
            f"User {self.tor_user}",
            f"DataDirectory {self.data_dir}",
            f"Log notice file {self.log_path}",
            f"SOCKSPort {self.socks_port}",
            f"TransPort {self.trans_port}",
            f"DNSPort {self.dns_port}",
            f"VirtualAddrNetwork {self.virtual_addr_network}",
            "AutomapHostsOnResolve 1",
        ]
        return "\n".join(lines) + "\n"

    def write_torrc(self):
        """Write the relay configuration, replacing any previous one"""
        torrc_dir = os.path.dirname(self.torrc_path)
        try:
            if torrc_dir:
                os.makedirs(torrc_dir, exist_ok=True)
            with open(self.torrc_path, 'w') as f:
                f.write(self.render())
        except OSError as e:
            raise ConfigWriteError(f"Failed to write {self.torrc_path}: {e}") from e

        logging.info(f"Wrote relay configuration to {self.torrc_path}")
        return self.torrc_path
