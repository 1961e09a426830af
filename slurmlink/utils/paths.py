"""Remote directory layout for jobs.

Project directories hold inputs and the ``job_info.json`` metadata; scratch
directories are where the scheduler actually runs the job.
"""

from __future__ import annotations

import posixpath

from slurmlink.config import Settings, settings
from slurmlink.errors import InputValidationError
from slurmlink.utils.validation import sanitize_identifier, sanitize_username, validate_relative_path

INPUT_FILES_DIR = "input_files"
SCRIPTS_DIR = "scripts"
OUTPUTS_DIR = "outputs"
JOB_SUBDIRECTORIES = (INPUT_FILES_DIR, SCRIPTS_DIR, OUTPUTS_DIR)

JOB_METADATA_FILE = "job_info.json"
JOB_SCRIPT_FILE = "job.sbatch"


class JobPaths:
    """Builds validated remote paths for a user's jobs."""

    def __init__(self, cfg: Settings | None = None) -> None:
        self._cfg = cfg or settings

    def project_base(self, username: str) -> str:
        return posixpath.join(
            self._cfg.project_root,
            sanitize_username(username),
            self._cfg.job_directory_name,
        )

    def scratch_base(self, username: str) -> str:
        return posixpath.join(
            self._cfg.scratch_root,
            sanitize_username(username),
            self._cfg.job_directory_name,
        )

    def project_dir(self, username: str, job_id: str) -> str:
        return posixpath.join(self.project_base(username), sanitize_identifier(job_id, field="job_id"))

    def scratch_dir(self, username: str, job_id: str) -> str:
        return posixpath.join(self.scratch_base(username), sanitize_identifier(job_id, field="job_id"))

    def metadata_path(self, project_dir: str) -> str:
        return posixpath.join(project_dir, JOB_METADATA_FILE)

    def input_path(self, project_dir: str, file_name: str) -> str:
        return posixpath.join(project_dir, INPUT_FILES_DIR, validate_relative_path(file_name))

    def job_file(self, base_dir: str, relative: str) -> str:
        return posixpath.join(base_dir, validate_relative_path(relative))

    def subdirectories(self, base_dir: str) -> list[str]:
        return [posixpath.join(base_dir, name) for name in JOB_SUBDIRECTORIES]

    def deletable_job_dir(self, path: str) -> str:
        """Return *path* if it is a job directory this tool created, else raise.

        Only absolute paths of the form ``.../<job_directory_name>/<job_id>``
        pass; anything else is refused before a recursive delete can see it.
        """
        name = self._cfg.job_directory_name
        parent, job_id = posixpath.split(path.rstrip("/"))
        if (
            not path.startswith("/")
            or ".." in path
            or posixpath.normpath(path) != path.rstrip("/")
            or posixpath.basename(parent) != name
        ):
            raise InputValidationError(
                f"refusing to delete {path!r}: not a {name} job directory",
                details={"path": path},
            )
        sanitize_identifier(job_id, field="job directory")
        return path.rstrip("/")


job_paths = JobPaths()
