"""
Service layer for running external media tools.

This package supervises yt-dlp and ffmpeg processes independently of any
Django models or views. It is used by:
- Host services through jobs.operations.get_job_queue()
- The CLI management commands (management/commands/fetch.py, transcode.py, runjob.py)
"""
