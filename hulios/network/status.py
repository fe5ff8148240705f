#!/usr/bin/env python3
import dataclasses
import logging

import requests

from hulios.core import constants


@dataclasses.dataclass
class TorStatus:
    is_tor: bool
    ip: str


class StatusCheckError(Exception):
    pass


def check_status(session=None, url=constants.STATUS_URL, timeout=constants.STATUS_TIMEOUT_SECONDS):
    """Ask the Tor Project which exit the current connection uses"""
    session = session or requests.Session()
    try:
        resp = session.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise StatusCheckError(f"Failed to connect to check.torproject.org: {e}") from e

    try:
        payload = resp.json()
        return TorStatus(is_tor=bool(payload["IsTor"]), ip=str(payload["IP"]))
    except (ValueError, KeyError, TypeError) as e:
        raise StatusCheckError(f"Failed to parse status response: {e}") from e


def lookup_public_ip(session=None, url=constants.FALLBACK_IP_URL, timeout=constants.STATUS_TIMEOUT_SECONDS):
    """Plain public IP lookup used when the Tor check is unreachable"""
    session = session or requests.Session()
    try:
        resp = session.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        logging.debug(f"Fallback IP lookup failed: {e}")
        return None
    return resp.text.strip() or None
