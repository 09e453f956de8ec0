#!/usr/bin/env python3
"""
Development launcher for voicegate.

- Runs the live session in the foreground with dev logging
- Ctrl-C exits cleanly
- Ctrl-R restarts the session (config is reloaded)
"""

import os
import signal
import sys
import termios
import threading
import tty

from voicegate import config, live_session


class KeyWatcher(threading.Thread):
    def __init__(self):
        super().__init__(daemon=True)
        self.fd = sys.stdin.fileno()
        self.old_settings = termios.tcgetattr(self.fd)
        tty.setcbreak(self.fd)
        self.restart_requested = False

    def run(self):
        try:
            while True:
                ch = os.read(self.fd, 1)
                if not ch:
                    continue
                if ch == b"\x03":  # Ctrl-C
                    os.kill(os.getpid(), signal.SIGINT)
                elif ch == b"\x12":  # Ctrl-R
                    self.restart_requested = True
                    os.kill(os.getpid(), signal.SIGTERM)
        finally:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, self.old_settings)


def run_once(argv):
    try:
        return live_session.main(["--dev", *argv])
    except KeyboardInterrupt:
        return 130


def main():
    print("[dev] Running live session (Ctrl-C to exit, Ctrl-R to restart)")
    argv = sys.argv[1:]
    while True:
        watcher = KeyWatcher()
        watcher.start()
        try:
            rc = run_once(argv)
        finally:
            # Always restore terminal mode once the session is down
            termios.tcsetattr(watcher.fd, termios.TCSADRAIN, watcher.old_settings)

        if watcher.restart_requested:
            print("[dev] Restart requested via Ctrl-R")
            config.reload_cfg()
            continue
        print("[dev] Exiting dev mode")
        return rc


if __name__ == "__main__":
    sys.exit(main())
