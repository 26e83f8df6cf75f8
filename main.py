#!/usr/bin/env python3
"""
Habit Blocker - Block distracting websites while habits are overdue.

A daemon keeps a managed block in /etc/hosts in sync with the habit API:
as soon as any habit passes its deadline without being completed or
skipped, the configured websites are pointed at 127.0.0.1, and the block
is lifted once every overdue habit is resolved for the day.

Usage:
    sudo python main.py run            # Run the daemon in the foreground
    sudo python main.py run --daemon   # Detach and run in the background
    python main.py refresh             # Ask the daemon to re-evaluate now
    python main.py reset               # Emergency unblock
"""

from habit_blocker.utils.daemon import main

if __name__ == "__main__":
    main()
