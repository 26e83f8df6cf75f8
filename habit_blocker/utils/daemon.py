#!/usr/bin/env python3
import os
import sys
import json
import argparse
import logging
from daemon import DaemonContext
import lockfile

from habit_blocker.core.blocker import HabitBlocker
from habit_blocker.file_handlers.hosts_file import HostsFileHandler
from habit_blocker.network import ipc_client
from habit_blocker.utils.config import load_config
from habit_blocker.utils.errors import StartupError

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
CLIENT_COMMANDS = ("ping", "refresh", "reset", "status")
EXPECTED_REPLIES = {"ping": "pong", "refresh": "ok", "reset": "ok"}
WAITING_COMMANDS = ("refresh", "reset")


def parse_arguments(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(description='Block distracting websites while habits are overdue')
    parser.add_argument('--config', help='Path to a JSON config file')
    parser.add_argument('--hosts-path', help='Hosts file to manage (default /etc/hosts)')
    parser.add_argument('--socket-path', help='Path of the daemon control socket')
    parser.add_argument('--api-url', help='Base URL of the habit API')
    parser.add_argument('--poll-interval', type=float, help='Fallback poll interval in seconds')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')

    sub = parser.add_subparsers(dest='command', required=True)
    run = sub.add_parser('run', help='Run the blocking daemon')
    run.add_argument('--daemon', action='store_true', help='Detach and run in the background')
    sub.add_parser('ping', help='Check that the daemon is alive')
    sub.add_parser('refresh', help='Ask the daemon to re-evaluate blocking now')
    sub.add_parser('reset', help='Emergency unblock: strip all managed hosts entries')
    sub.add_parser('status', help='Show the daemon blocking state')
    sub.add_parser('restore', help='Strip managed hosts entries directly (daemon not running)')
    return parser.parse_args(argv)


def build_config(args):
    overrides = {
        'hosts_path': args.hosts_path,
        'socket_path': args.socket_path,
        'api_url': args.api_url,
        'poll_interval': args.poll_interval,
        'log_level': 'DEBUG' if args.verbose else None,
    }
    return load_config(args.config, overrides)


def setup_logging(config, console=True):
    """Log to <log_dir>/daemon.log and, unless detached, to the console"""
    os.makedirs(config.log_dir, exist_ok=True)
    file_handler = logging.FileHandler(config.log_file)
    handlers = [file_handler]
    if console:
        handlers.append(logging.StreamHandler())
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    return file_handler


def run_daemon(config, file_handler):
    """Run the habit blocker as a detached daemon"""
    pid_dir = os.path.dirname(config.pid_file)
    try:
        os.makedirs(pid_dir, exist_ok=True)
    except OSError as e:
        logging.error(f"Failed to create PID directory: {e}")
        return 1

    with DaemonContext(
        pidfile=lockfile.FileLock(config.pid_file),
        detach_process=True,
        files_preserve=[file_handler.stream],
        umask=0o022,
    ):
        blocker = HabitBlocker(config)
        return blocker.run()


def run_foreground(config):
    """Run the habit blocker in the foreground"""
    blocker = HabitBlocker(config)
    return blocker.run()


def run_client(config, command):
    """Send one command to a running daemon and print the reply"""
    timeout = config.ipc_timeout
    if command in WAITING_COMMANDS and ipc_client.ping(config.socket_path, timeout=timeout):
        # The daemon bounds its own wait by the size of the last fetch
        timeout = None
    reply = ipc_client.send_command(config.socket_path, command, timeout=timeout)
    if reply is None:
        print(f"Daemon not reachable at {config.socket_path}", file=sys.stderr)
        return 1
    if command == 'status' and not reply.startswith('error:'):
        try:
            print(json.dumps(json.loads(reply), indent=2, sort_keys=True))
        except ValueError:
            print(reply)
            return 1
        return 0
    print(reply)
    return 0 if reply == EXPECTED_REPLIES.get(command) else 1


def run_restore(config):
    """Uninstall-time cleanup without a running daemon"""
    handler = HostsFileHandler(config.hosts_path, config.backup_dir)
    try:
        handler.restore()
    except OSError as e:
        logging.error(f"Failed to restore hosts file: {e}")
        return 1
    return 0


def main(argv=None):
    """Main entry point"""
    args = parse_arguments(argv)
    try:
        config = build_config(args)
    except StartupError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.command in CLIENT_COMMANDS:
        logging.basicConfig(level=getattr(logging, config.log_level, logging.INFO), format=LOG_FORMAT)
        sys.exit(run_client(config, args.command))

    try:
        file_handler = setup_logging(config, console=not getattr(args, 'daemon', False))
    except OSError as e:
        print(f"Failed to set up logging in {config.log_dir}: {e}", file=sys.stderr)
        sys.exit(1)

    if args.command == 'restore':
        sys.exit(run_restore(config))

    # Run in daemon or foreground mode
    if args.daemon:
        sys.exit(run_daemon(config, file_handler))
    else:
        sys.exit(run_foreground(config))


if __name__ == "__main__":
    main()
