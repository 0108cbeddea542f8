import atexit

from django.apps import AppConfig


class JobsConfig(AppConfig):
    name = 'jobs'
    default_auto_field = 'django.db.models.BigAutoField'

    def ready(self):
        """Stop any running external processes when the interpreter exits"""
        from jobs.operations import shutdown_job_queue

        atexit.register(shutdown_job_queue)
