#!/usr/bin/env python3
"""
HULIOS - Make the Tor network your default gateway.

Routes all outbound traffic through Tor using iptables redirection, pins DNS
to Tor's DNSPort and supervises the tor process while enforcement is active.

Usage:
    sudo python main.py start    # Engage: all traffic through Tor
    sudo python main.py stop     # Disengage: restore normal networking
    sudo python main.py restart  # Fresh Tor instance
    python main.py status        # Enforcement state and exit IP
    sudo python main.py flush    # Clear firewall rules and restore DNS only
"""
import sys

from hulios.utils.daemon import main

if __name__ == "__main__":
    sys.exit(main())
