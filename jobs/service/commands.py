"""
Command builders for the external media tools.

Each builder returns a JobSpec with an explicit argument vector; nothing
here is ever joined into a shell command line.
"""
from pathlib import Path

from jobs.service.config import (
    get_ffmpeg_args_for_type,
    get_ffmpeg_path,
    get_subtitle_language,
    get_ytdlp_args_for_type,
    get_ytdlp_path,
    get_ytdlp_proxy,
    split_args,
)
from jobs.service.constants import TOOL_FFMPEG, TOOL_YTDLP
from jobs.service.job import JobSpec

AUDIO_FORMAT_SPEC = 'bestaudio/best'
VIDEO_FORMAT_SPEC = 'bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best'


def build_metadata_args(metadata):
    """
    Build ffmpeg -metadata arguments.

    Args:
        metadata: Dict with optional keys: title, author, description

    Returns:
        list: ffmpeg arguments
    """
    metadata_args = []
    if not metadata:
        return metadata_args
    if metadata.get('title'):
        metadata_args.extend(['-metadata', f"title={metadata['title']}"])
    if metadata.get('author'):
        metadata_args.extend(['-metadata', f"artist={metadata['author']}"])
    if metadata.get('description'):
        metadata_args.extend(['-metadata', f"comment={metadata['description']}"])
    return metadata_args


def build_fetch_spec(url, outdir='.', media_type='video', ytdlp_extra_args=None,
                     timeout=None, priority=None, name=None, log_path=None):
    """
    Build a yt-dlp download job.

    Args:
        url: Source URL (http(s):// or file://)
        outdir: Directory the download is written to (created if missing)
        media_type: 'audio' or 'video'
        ytdlp_extra_args: Extra yt-dlp arguments string; defaults to the
            MEDIAEXEC_DEFAULT_YTDLP_ARGS_* setting for the media type
        timeout: Deadline in seconds (None uses the queue default)
        priority: Admission priority, higher first
        name: Display label
        log_path: Optional per-job log file

    Returns:
        JobSpec
    """
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    if media_type == 'audio':
        format_spec = AUDIO_FORMAT_SPEC
    else:
        format_spec = VIDEO_FORMAT_SPEC

    args = [
        '--newline',  # one progress line per update
        '--no-colors',
        '--no-playlist',
        '--format', format_spec,
        '--output', str(outdir / 'download.%(ext)s'),
        '--write-thumbnail',
        '--write-subs',
        '--write-auto-subs',
        '--sub-langs', get_subtitle_language(),
    ]

    if url.startswith('file://'):
        args.append('--enable-file-urls')

    # Needed on cloud VMs where YouTube blocks requests
    proxy = get_ytdlp_proxy()
    if proxy:
        args.extend(['--proxy', proxy])

    if ytdlp_extra_args is None:
        ytdlp_extra_args = get_ytdlp_args_for_type(media_type)
    # Later options win in yt-dlp, so settings override the fallback format
    args.extend(split_args(ytdlp_extra_args))

    args.extend(['--', url])

    return JobSpec(
        executable=get_ytdlp_path(),
        args=args,
        cwd=str(outdir),
        timeout=timeout,
        priority=priority,
        name=name or f'fetch {url}',
        tool=TOOL_YTDLP,
        log_path=log_path,
    )


def build_transcode_spec(input_path, output_path, media_type='video', ffmpeg_extra_args=None,
                         metadata=None, timeout=None, priority=None, name=None, log_path=None):
    """
    Build an ffmpeg transcode job.

    Args:
        input_path: Path to input file
        output_path: Path for output file (parent created if missing)
        media_type: 'audio' or 'video'
        ffmpeg_extra_args: Extra ffmpeg arguments string; defaults to the
            MEDIAEXEC_DEFAULT_FFMPEG_ARGS_* setting for the media type
        metadata: Dict with optional keys: title, author, description
        timeout: Deadline in seconds (None uses the queue default)
        priority: Admission priority, higher first
        name: Display label
        log_path: Optional per-job log file

    Returns:
        JobSpec
    """
    input_path = Path(input_path)
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    if ffmpeg_extra_args is None:
        ffmpeg_extra_args = get_ffmpeg_args_for_type(media_type)

    # -map_metadata 0 copies existing metadata from the input
    args = [
        '-hide_banner',
        '-nostdin',
        '-i', str(input_path),
        '-y',
        '-map_metadata', '0',
    ] + split_args(ffmpeg_extra_args) + build_metadata_args(metadata) + [
        str(output_path)
    ]

    return JobSpec(
        executable=get_ffmpeg_path(),
        args=args,
        timeout=timeout,
        priority=priority,
        name=name or f'transcode {input_path.name}',
        tool=TOOL_FFMPEG,
        log_path=log_path,
    )
