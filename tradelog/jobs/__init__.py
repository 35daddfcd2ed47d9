from .import_jobs import ImportJob, ImportJobRunner
