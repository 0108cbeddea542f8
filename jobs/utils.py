import os
import shlex
from datetime import datetime

from nanoid import generate


def generate_job_id():
    """Generate NanoID with A-Z a-z 0-9 alphabet"""
    alphabet = 'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789'
    return generate(alphabet, size=21)


def write_log(log_path, message):
    """Append message to log file"""
    if log_path:
        log_dir = os.path.dirname(str(log_path))
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        with open(log_path, 'a') as f:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
            f.write(f'[{timestamp}] {message}\n')


def format_command(argv):
    """Render an argument vector for log output (display only, never executed)"""
    return ' '.join(shlex.quote(str(arg)) for arg in argv)
