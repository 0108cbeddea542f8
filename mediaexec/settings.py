"""
Django settings for the mediaexec project.

Every MEDIAEXEC_* option can be overridden with an environment variable of
the same name, which is how the container image configures the binaries,
the process identity and the concurrency limits.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'django-insecure-mediaexec-dev-key')

DEBUG = os.environ.get('DJANGO_DEBUG', 'false').lower() == 'true'

ALLOWED_HOSTS = os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',')

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'jobs',
]

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': BASE_DIR / 'db.sqlite3',
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

TIME_ZONE = 'UTC'
USE_TZ = True


def _env_int(name, default):
    value = os.environ.get(name)
    if value in (None, ''):
        return default
    return int(value)


def _env_float(name, default):
    value = os.environ.get(name)
    if value in (None, ''):
        return default
    return float(value)


# External binaries (pre-provisioned by the image, /app is on PATH)
MEDIAEXEC_YTDLP_PATH = os.environ.get('MEDIAEXEC_YTDLP_PATH', 'yt-dlp')
MEDIAEXEC_FFMPEG_PATH = os.environ.get('MEDIAEXEC_FFMPEG_PATH', 'ffmpeg')

# Identity for spawned processes (None keeps the coordinator's own)
MEDIAEXEC_PROCESS_USER = os.environ.get('MEDIAEXEC_PROCESS_USER') or None
MEDIAEXEC_PROCESS_GROUP = os.environ.get('MEDIAEXEC_PROCESS_GROUP') or None

# Concurrency and resource limits
MEDIAEXEC_MAX_CONCURRENT_JOBS = _env_int('MEDIAEXEC_MAX_CONCURRENT_JOBS', 2)
MEDIAEXEC_DEFAULT_TIMEOUT_SECONDS = _env_float('MEDIAEXEC_DEFAULT_TIMEOUT_SECONDS', 0)
MEDIAEXEC_OUTPUT_BUFFER_BYTES = _env_int('MEDIAEXEC_OUTPUT_BUFFER_BYTES', 64 * 1024)
MEDIAEXEC_GRACE_PERIOD_SECONDS = _env_float('MEDIAEXEC_GRACE_PERIOD_SECONDS', 5)
MEDIAEXEC_HEARTBEAT_SECONDS = _env_float('MEDIAEXEC_HEARTBEAT_SECONDS', 8)
MEDIAEXEC_QUEUE_CAPACITY = _env_int('MEDIAEXEC_QUEUE_CAPACITY', None)

# Per-job plain-text logs (disabled when unset)
MEDIAEXEC_JOB_LOG_DIR = os.environ.get('MEDIAEXEC_JOB_LOG_DIR') or None

# yt-dlp options
MEDIAEXEC_YTDLP_PROXY = os.environ.get('MEDIAEXEC_YTDLP_PROXY', '')
MEDIAEXEC_SUBTITLE_LANGUAGE = os.environ.get('MEDIAEXEC_SUBTITLE_LANGUAGE', 'en')
MEDIAEXEC_DEFAULT_YTDLP_ARGS_AUDIO = os.environ.get(
    'MEDIAEXEC_DEFAULT_YTDLP_ARGS_AUDIO', '--format "bestaudio[ext=m4a]/bestaudio/best"'
)
MEDIAEXEC_DEFAULT_YTDLP_ARGS_VIDEO = os.environ.get(
    'MEDIAEXEC_DEFAULT_YTDLP_ARGS_VIDEO',
    '--format "bv*[height<=720][ext=mp4]+ba[ext=m4a]/b[ext=mp4]/best" --merge-output-format mp4',
)

# ffmpeg options
MEDIAEXEC_DEFAULT_FFMPEG_ARGS_AUDIO = os.environ.get(
    'MEDIAEXEC_DEFAULT_FFMPEG_ARGS_AUDIO', '-vn -c:a aac -b:a 128k'
)
MEDIAEXEC_DEFAULT_FFMPEG_ARGS_VIDEO = os.environ.get(
    'MEDIAEXEC_DEFAULT_FFMPEG_ARGS_VIDEO',
    '-c:v libx264 -preset veryfast -crf 23 -c:a aac -b:a 128k -movflags +faststart',
)
