#!/usr/bin/env python3
import os
import sys
import time
import shutil
import signal
import logging
import threading
import contextlib
import subprocess

from lockfile.pidlockfile import PIDLockFile

from hulios.core import constants
from hulios.core.errors import ConfigWriteError, Outcome, RelayStartError
from hulios.file_handlers.torrc_file import TorrcHandler
from hulios.security.protection import SecurityProtection
from hulios.utils.commands import run_cmd
from hulios.utils.notify import Notifier

CRASH_TITLE = "⚠️ HULIOS CRITICAL"
CRASH_BODY = "Tor process crashed! Network may be leaking. Run: sudo hulios restart"


def pid_is_running(pid):
    """Liveness check using kill(pid, 0).
    PermissionError means the process exists but belongs to someone else.
    """
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False


def read_pid_file(pid_file):
    try:
        with open(pid_file, "r", encoding="utf-8") as f:
            return int(f.read().strip())
    except (OSError, ValueError):
        return None


def write_pid_file(pid_file, pid):
    tmp_path = f"{pid_file}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(str(pid))
    os.replace(tmp_path, pid_file)


def remove_pid_file(pid_file):
    with contextlib.suppress(FileNotFoundError):
        os.remove(pid_file)


class RelayWatcher(threading.Thread):
    """Background thread that raises one alert when the relay dies.

    Unlike a bare loop it can be cancelled: ``stop()`` sets an event that
    every wait observes, and ``join()`` then returns promptly.
    """

    def __init__(self, relay_alive, notifier, grace=constants.WATCHER_GRACE_SECONDS,
                 interval=constants.WATCHER_INTERVAL_SECONDS):
        super().__init__(name="hulios-relay-watcher", daemon=True)
        self.relay_alive = relay_alive
        self.notifier = notifier
        self.grace = grace
        self.interval = interval
        self.tripped = False
        self._stop_event = threading.Event()

    def stop(self):
        self._stop_event.set()
        logging.debug("Relay watcher stop requested")

    @property
    def stopped(self):
        return self._stop_event.is_set()

    def run(self):
        logging.info("Relay watcher started")
        if self._stop_event.wait(self.grace):
            return

        while not self._stop_event.wait(self.interval):
            if self.relay_alive():
                continue
            self.tripped = True
            self.notifier.notify(CRASH_TITLE, CRASH_BODY, "critical")
            logging.critical("Tor process died!")
            return


def _project_root():
    return os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def spawn_detached_watcher(log_file=None, pid_file=constants.WATCHER_PID_FILE,
                           relay_pid_file=constants.TOR_PID_FILE):
    """Start the watcher as its own daemon so it outlives the CLI process"""
    cmd = [sys.executable, "-m", "hulios.utils.daemon"]
    if log_file:
        cmd += ["--log-file", log_file]
    cmd += ["--watcher-pid-file", pid_file, "--relay-pid-file", relay_pid_file]
    cmd.append("watch")

    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(p for p in (_project_root(), env.get("PYTHONPATH")) if p)

    proc = subprocess.Popen(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL,
                            stderr=subprocess.DEVNULL, env=env, start_new_session=True)
    logging.info(f"Spawned relay watcher daemon (launcher PID: {proc.pid})")
    return proc


def stop_detached_watcher(pid_file=constants.WATCHER_PID_FILE,
                          timeout=constants.WATCHER_STOP_TIMEOUT_SECONDS):
    """Signal the detached watcher to stop and wait for it to exit.
    Returns True if a live watcher was stopped.
    """
    lock = PIDLockFile(pid_file)
    pid = lock.read_pid()
    if pid is None:
        return False

    if not pid_is_running(pid):
        logging.debug(f"Removing stale watcher pid file {pid_file}")
        with contextlib.suppress(OSError):
            lock.break_lock()
        return False

    with contextlib.suppress(ProcessLookupError):
        os.kill(pid, signal.SIGTERM)

    deadline = time.monotonic() + timeout
    while pid_is_running(pid) and time.monotonic() < deadline:
        time.sleep(0.1)

    if pid_is_running(pid):
        logging.warning(f"Relay watcher (PID: {pid}) ignored SIGTERM, killing it")
        with contextlib.suppress(ProcessLookupError):
            os.kill(pid, signal.SIGKILL)
        with contextlib.suppress(OSError):
            lock.break_lock()

    logging.info(f"Stopped relay watcher (PID: {pid})")
    return True


class TorRelay:
    def __init__(self, runner=run_cmd, security=None, notifier=None, torrc_handler=None,
                 tor_binary=constants.TOR_BINARY, tor_user=constants.TOR_USER,
                 data_dir=constants.TOR_DATA_DIR, torrc_path=constants.TORRC_PATH,
                 log_path=constants.TOR_LOG_PATH, pid_file=constants.TOR_PID_FILE,
                 bootstrap_wait=constants.BOOTSTRAP_WAIT_SECONDS, sleep=time.sleep,
                 watcher_pid_file=constants.WATCHER_PID_FILE,
                 watcher_grace=constants.WATCHER_GRACE_SECONDS,
                 watcher_interval=constants.WATCHER_INTERVAL_SECONDS,
                 process_name="tor"):
        self.runner = runner
        self.security = security or SecurityProtection(runner=runner)
        self.notifier = notifier or Notifier(runner=runner)
        self.tor_binary = tor_binary
        self.tor_user = tor_user
        self.data_dir = data_dir
        self.log_path = log_path
        self.pid_file = pid_file
        self.bootstrap_wait = bootstrap_wait
        self.sleep = sleep
        self.watcher_pid_file = watcher_pid_file
        self.watcher_grace = watcher_grace
        self.watcher_interval = watcher_interval
        self.process_name = process_name
        self.torrc_handler = torrc_handler or TorrcHandler(
            torrc_path=torrc_path, tor_user=tor_user, data_dir=data_dir, log_path=log_path)

        self._process = None
        self._watcher = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def prepare_data_dir(self):
        shutil.rmtree(self.data_dir, ignore_errors=True)
        try:
            os.makedirs(self.data_dir, exist_ok=True)
        except OSError as e:
            raise RelayStartError(f"Failed to create data dir {self.data_dir}: {e}") from e

        owner = f"{self.tor_user}:{self.tor_user}"
        self.runner(["chown", "-R", owner, self.data_dir], fatal=True).raise_for_outcome()

    def launch(self):
        """Start tor and block for the bootstrap wait before checking it survived"""
        self.security.ensure_root()

        self.prepare_data_dir()
        torrc_path = self.torrc_handler.write_torrc()

        try:
            self._process = subprocess.Popen(
                [self.tor_binary, "-f", torrc_path],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise RelayStartError(f"Failed to start tor process: {e}") from e

        pid = self._process.pid
        try:
            write_pid_file(self.pid_file, pid)
        except OSError as e:
            raise ConfigWriteError(f"Failed to write {self.pid_file}: {e}") from e
        logging.info(f"Tor starting (PID: {pid})...")

        self.sleep(self.bootstrap_wait)
        pid = self._follow_daemonized(pid)

        if not self.is_alive():
            self.notifier.notify("HULIOS Error", f"Tor failed to start! Check {self.log_path}", "critical")
            raise RelayStartError("Tor process died during startup")
        return pid

    def _find_daemon_pid(self):
        result = self.runner(["pgrep", "-n", "-x", self.process_name])
        if not result.ok:
            return None
        try:
            return int(result.stdout.split()[0])
        except (IndexError, ValueError):
            return None

    def _follow_daemonized(self, pid):
        """Point the marker at the forked daemon once the launcher has exited.

        With RunAsDaemon the spawned process forks and exits, so its pid no
        longer identifies the relay.
        """
        self._reap()
        if pid_is_running(pid):
            return pid

        daemon_pid = self._find_daemon_pid()
        if daemon_pid is None:
            return pid
        try:
            write_pid_file(self.pid_file, daemon_pid)
        except OSError as e:
            raise ConfigWriteError(f"Failed to write {self.pid_file}: {e}") from e
        logging.info(f"Tor daemonized (PID: {daemon_pid})")
        return daemon_pid

    def read_pid(self):
        return read_pid_file(self.pid_file)

    def _reap(self):
        # A launcher that already exited would otherwise linger as a zombie
        # and pass the kill(pid, 0) check
        if self._process is not None:
            self._process.poll()

    def is_alive(self):
        """True if the recorded pid is alive or a tor process exists at all"""
        try:
            self._reap()
            pid = self.read_pid()
            if pid is not None and pid_is_running(pid):
                return True
        except Exception as e:
            logging.debug(f"pid liveness check failed: {e}")

        return self.runner(["pgrep", "-x", self.process_name]).ok

    def _pid_looks_like_relay(self, pid):
        if self._process is not None and self._process.pid == pid:
            return True
        try:
            with open(f"/proc/{pid}/cmdline", "rb") as f:
                args = [a.decode(errors="replace") for a in f.read().split(b"\0") if a]
        except OSError:
            return False
        if not args:
            return False
        return (os.path.basename(args[0]) == self.process_name
                or self.torrc_handler.torrc_path in args)

    def _terminate_recorded_pid(self):
        pid = self.read_pid()
        if pid is None or not pid_is_running(pid) or not self._pid_looks_like_relay(pid):
            return
        with contextlib.suppress(ProcessLookupError):
            os.kill(pid, signal.SIGTERM)
        logging.info(f"Sent SIGTERM to tor (PID: {pid})")

        if self._process is not None and self._process.pid == pid:
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._process.wait()

    def stop(self):
        """Stop every tor instance and drop the pid marker. Safe to repeat."""
        self._terminate_recorded_pid()
        self._process = None

        outcomes = []
        for cmd in (["systemctl", "stop", "tor"], ["killall", self.process_name]):
            result = self.runner(cmd)
            outcomes.append(Outcome.SUCCESS if result.ok else Outcome.FAILED_NONFATAL)

        remove_pid_file(self.pid_file)
        return Outcome.combine(outcomes)

    # ------------------------------------------------------------------
    # Watcher
    # ------------------------------------------------------------------
    def watch(self, detach=False, log_file=None):
        if detach:
            return spawn_detached_watcher(log_file=log_file, pid_file=self.watcher_pid_file,
                                          relay_pid_file=self.pid_file)

        self._watcher = RelayWatcher(self.is_alive, self.notifier,
                                     grace=self.watcher_grace, interval=self.watcher_interval)
        self._watcher.start()
        return self._watcher

    def stop_watcher(self):
        """Cancel the in-process watcher and any detached one, waiting for both"""
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher.join(timeout=constants.WATCHER_STOP_TIMEOUT_SECONDS)
            self._watcher = None
        return stop_detached_watcher(self.watcher_pid_file)
