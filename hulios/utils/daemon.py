#!/usr/bin/env python3
import sys
import signal
import argparse
import logging

from daemon.daemon import DaemonContext
from daemon.pidfile import TimeoutPIDLockFile

from hulios.core import constants
from hulios.core.engine import Enforcer
from hulios.core.errors import HuliosError
from hulios.network.relay import RelayWatcher, TorRelay
from hulios.network.status import StatusCheckError, check_status, lookup_public_ip
from hulios.utils.notify import Notifier

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

# command -> (message before, message after, Enforcer method)
TRANSITIONS = {
    "start": ("Starting HULIOS...", "HULIOS started successfully.", "start"),
    "stop": ("Stopping HULIOS...", "HULIOS stopped.", "stop"),
    "restart": ("Restarting HULIOS...", "HULIOS restarted.", "restart"),
    "flush": ("Flushing IPTables rules...", "Rules flushed.", "flush"),
}


def parse_arguments(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        prog="hulios",
        description='HULIOS: An engine to make Tor Network your default gateway')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')
    parser.add_argument('--log-file', default=constants.LOG_FILE, help='Log file path')
    parser.add_argument('--watcher-pid-file', default=constants.WATCHER_PID_FILE, help=argparse.SUPPRESS)
    parser.add_argument('--relay-pid-file', default=constants.TOR_PID_FILE, help=argparse.SUPPRESS)
    sub = parser.add_subparsers(dest='command', required=True)
    sub.add_parser('start', help='Route all traffic through Tor')
    sub.add_parser('stop', help='Restore normal networking')
    sub.add_parser('restart', help='Stop, then start with a fresh Tor instance')
    sub.add_parser('status', help='Show enforcement state and the current exit IP')
    sub.add_parser('flush', help='Clear firewall rules and restore DNS only')
    sub.add_parser('watch', help=argparse.SUPPRESS)
    return parser.parse_args(argv)


def setup_logging(log_file=constants.LOG_FILE, verbose=False):
    handlers = [logging.StreamHandler()]
    try:
        handlers.insert(0, logging.FileHandler(log_file))
    except OSError:
        # Unprivileged status calls cannot open the system log file
        pass
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def run_watcher_daemon(log_file=constants.LOG_FILE, verbose=False, pid_file=constants.WATCHER_PID_FILE,
                       relay_pid_file=constants.TOR_PID_FILE):
    """Detach and watch the relay until it dies or SIGTERM arrives"""
    relay = TorRelay(pid_file=relay_pid_file)
    watcher = RelayWatcher(relay.is_alive, Notifier())

    def _handle_sigterm(signum, frame):
        watcher.stop()

    with DaemonContext(
        pidfile=TimeoutPIDLockFile(pid_file, acquire_timeout=5),
        detach_process=True,
        umask=0o022,
        signal_map={signal.SIGTERM: _handle_sigterm},
    ):
        # DaemonContext closes inherited files, so logging starts here
        setup_logging(log_file, verbose)
        logging.info("Relay watcher daemon running")
        watcher.run()
        logging.info("Relay watcher daemon exiting")


def print_status(enforcer):
    state, facts = enforcer.probe_state()
    policy = facts.output_policy or "unknown (run as root)"
    print(f"\n[+] Enforcement: {state.value}")
    print(f"[+] Tor running: {facts.relay_alive}")
    print(f"[+] OUTPUT policy: {policy}")
    print(f"[+] DNS pinned to Tor: {facts.dns_hijacked}")

    try:
        status = check_status()
    except StatusCheckError as e:
        print(f"[!] Error checking status: {e}", file=sys.stderr)
        print("[*] Trying simple IP check via ifconfig.me...")
        ip = lookup_public_ip()
        print(f"[+] Ip: {ip or 'unknown'}\n")
        return False

    verdict = "The shadows are calm" if status.is_tor else "The shadows whisper"
    print(f"[+] Status: {verdict}")
    print(f"[+] Ip: {status.ip}\n")
    return status.is_tor


def run_transition(enforcer, command):
    before, after, method = TRANSITIONS[command]
    print(f"[+] {before}")
    try:
        getattr(enforcer, method)()
    except HuliosError as e:
        print(f"[!] Error during {command}: {e}", file=sys.stderr)
        logging.error(f"{command} failed: {e}")
        return 1
    print(f"[+] {after}")
    return 0


def main(argv=None):
    """Main entry point"""
    args = parse_arguments(argv)

    if args.command == 'watch':
        run_watcher_daemon(args.log_file, args.verbose, args.watcher_pid_file, args.relay_pid_file)
        return 0

    setup_logging(args.log_file, args.verbose)
    enforcer = Enforcer(log_file=args.log_file)

    if args.command == 'status':
        print_status(enforcer)
        return 0

    return run_transition(enforcer, args.command)


if __name__ == "__main__":
    sys.exit(main())
