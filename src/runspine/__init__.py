"""
runspine - run discovered jobs at most once, tracked in a completion ledger.

- runspine.core: errors, results, logging, settings, config
- runspine.execution: process runner, completion ledger and its migrations, scheduler
- runspine.sources: job sources (yt-dlp playlists, plain commands)
"""

__version__ = "0.1.0"
