"""
Configuration adapter for job execution settings.

Centralizes access to Django settings (which read the environment),
ensuring consistent configuration across the CLI and host services.
"""

import shlex
import shutil

from django.conf import settings


def resolve_executable(name):
    """
    Resolve an executable name against PATH.

    Absolute paths and names that cannot be found are returned unchanged,
    so a missing binary surfaces as a spawn error on the job itself.
    """
    if not name:
        return name
    return shutil.which(name) or name


def get_ytdlp_path():
    """Get the path to the yt-dlp executable"""
    return resolve_executable(settings.MEDIAEXEC_YTDLP_PATH)


def get_ffmpeg_path():
    """Get the path to the ffmpeg executable"""
    return resolve_executable(settings.MEDIAEXEC_FFMPEG_PATH)


def get_process_identity():
    """
    Get the user and group spawned processes should run as.

    Returns:
        tuple: (user, group), either may be None to inherit the coordinator's
    """
    return settings.MEDIAEXEC_PROCESS_USER, settings.MEDIAEXEC_PROCESS_GROUP


def get_max_concurrent_jobs():
    return max(1, int(settings.MEDIAEXEC_MAX_CONCURRENT_JOBS))


def get_default_timeout():
    """
    Get the default per-job deadline in seconds.

    Returns:
        float or None: None when jobs have no deadline by default
    """
    timeout = settings.MEDIAEXEC_DEFAULT_TIMEOUT_SECONDS
    if not timeout or timeout <= 0:
        return None
    return float(timeout)


def get_output_buffer_bytes():
    return int(settings.MEDIAEXEC_OUTPUT_BUFFER_BYTES)


def get_grace_period():
    """Get the delay between the graceful stop signal and the forced kill"""
    return max(0.0, float(settings.MEDIAEXEC_GRACE_PERIOD_SECONDS))


def get_heartbeat_interval():
    return float(settings.MEDIAEXEC_HEARTBEAT_SECONDS)


def get_queue_capacity():
    """
    Get the maximum number of queued jobs.

    Returns:
        int or None: None when the queue is unbounded
    """
    capacity = settings.MEDIAEXEC_QUEUE_CAPACITY
    if capacity is None:
        return None
    return int(capacity)


def get_job_log_dir():
    return settings.MEDIAEXEC_JOB_LOG_DIR


def get_ytdlp_args_for_type(media_type):
    """
    Get extra yt-dlp arguments for the specified media type.

    Args:
        media_type: 'audio' or 'video'

    Returns:
        str: yt-dlp command-line arguments
    """
    if media_type == 'audio':
        return settings.MEDIAEXEC_DEFAULT_YTDLP_ARGS_AUDIO
    elif media_type == 'video':
        return settings.MEDIAEXEC_DEFAULT_YTDLP_ARGS_VIDEO
    else:
        return ''


def get_ffmpeg_args_for_type(media_type):
    """
    Get extra ffmpeg arguments for the specified media type.

    Args:
        media_type: 'audio' or 'video'

    Returns:
        str: ffmpeg command-line arguments
    """
    if media_type == 'audio':
        return settings.MEDIAEXEC_DEFAULT_FFMPEG_ARGS_AUDIO
    elif media_type == 'video':
        return settings.MEDIAEXEC_DEFAULT_FFMPEG_ARGS_VIDEO
    else:
        return ''


def get_ytdlp_proxy():
    return settings.MEDIAEXEC_YTDLP_PROXY


def get_subtitle_language():
    return settings.MEDIAEXEC_SUBTITLE_LANGUAGE


def split_args(args_string):
    """
    Split a settings string of command-line arguments into a list.

    Quoting follows POSIX shell rules, but the result is only ever passed
    to the process as an argument vector.

    Example:
        >>> split_args('--format "bv*[height<=720]" --newline')
        ['--format', 'bv*[height<=720]', '--newline']
    """
    if not args_string:
        return []
    return shlex.split(args_string)


def get_queue_options():
    """
    Collect the keyword arguments for constructing a JobQueue from settings.

    Returns:
        dict
    """
    user, group = get_process_identity()
    return {
        'max_concurrent_jobs': get_max_concurrent_jobs(),
        'default_timeout': get_default_timeout(),
        'output_buffer_bytes': get_output_buffer_bytes(),
        'grace_period': get_grace_period(),
        'heartbeat_interval': get_heartbeat_interval(),
        'queue_capacity': get_queue_capacity(),
        'job_log_dir': get_job_log_dir(),
        'user': user,
        'group': group,
    }
