import io
import tarfile
from pathlib import PurePosixPath

from underleaf.errors import NotFound
from underleaf.latex import PDF_MAGIC


def safe_relative(path):
    """Validate a project-relative path. Absolute paths and '..' are refused."""
    p = PurePosixPath(path)
    if not path or p.is_absolute() or ".." in p.parts:
        raise ValueError(f"Invalid path: {path!r}")
    return str(p)


class FileFetcher:
    """Pulls single files out of a sandbox through the runtime's archive API."""

    def __init__(self, registry, runtime=None, workdir=None):
        self.registry = registry
        self.runtime = runtime or registry.runtime
        self.workdir = workdir or registry.workdir

    def fetch_file(self, user, project, path):
        rel = safe_relative(path)
        sandbox = self.registry.get_or_create(user, project)
        try:
            archive = self.runtime.get_archive(sandbox.container_id, f"{self.workdir}/{rel}")
        except FileNotFoundError:
            raise NotFound(f"File not found: {rel}")

        name = PurePosixPath(rel).name
        with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
            for member in tar.getmembers():
                if member.isfile() and (member.name == name or member.name.endswith("/" + name)):
                    return tar.extractfile(member).read()
        raise NotFound(f"File not found in archive: {rel}")

    def fetch_pdf(self, user, project, path):
        data = self.fetch_file(user, project, path)
        if not data:
            raise ValueError(f"PDF file is empty: {path}")
        if not data.startswith(PDF_MAGIC.encode()):
            raise ValueError(f"File is not a valid PDF: {path}")
        return data
