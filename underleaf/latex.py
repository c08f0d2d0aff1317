"""LaTeX compilation inside a user's sandbox.

Compilation is an ordered list of strategies. Each runs its commands and then
has to show a real PDF (present, non-empty, starting with %PDF); the first one
that does wins. latexmk handles bibliographies and reruns on its own; the
pdflatex fallback does the bibtex dance by hand when the project has .bib files.
"""

from dataclasses import dataclass
from pathlib import PurePosixPath

from underleaf.errors import CommandFailed, CompileFailed, NotFound
from underleaf.log import write_log

MAIN_CANDIDATES = ("paper.tex", "main.tex", "document.tex", "article.tex")
PDF_MAGIC = "%PDF"

_LATEX_FLAGS = ["-interaction=nonstopmode", "-output-directory=."]


def pdf_name(tex_file):
    return str(PurePosixPath(tex_file).with_suffix(".pdf"))


def aux_name(tex_file):
    return str(PurePosixPath(tex_file).with_suffix(".aux"))


@dataclass
class CompileResult:
    tex_file: str
    pdf_file: str
    strategy: str
    size: int
    stdout: str = ""
    stderr: str = ""


class _Output:
    def __init__(self):
        self.stdout = []
        self.stderr = []

    def add(self, result):
        self.stdout.append(result.stdout)
        self.stderr.append(result.stderr)

    def text(self):
        return "\n".join(s for s in self.stdout if s), "\n".join(s for s in self.stderr if s)


class LatexCompiler:
    def __init__(self, executor):
        self.executor = executor
        self.strategies = [
            ("latexmk", self._latexmk),
            ("pdflatex", self._pdflatex),
        ]

    def _run(self, user, project, argv):
        return self.executor.run(user, project, argv)

    def exists(self, user, project, path):
        try:
            self._run(user, project, ["test", "-f", path])
        except CommandFailed:
            return False
        return True

    def find_main_file(self, user, project, requested="main.tex"):
        """The requested file if present, else the first conventional main file."""
        candidates = [requested] if requested else []
        candidates += [c for c in MAIN_CANDIDATES if c != requested]
        for candidate in candidates:
            if self.exists(user, project, candidate):
                return candidate
        raise NotFound(f"No LaTeX main file found (tried {', '.join(candidates)})")

    def pdf_size(self, user, project, pdf_file):
        """Size of a valid PDF, or None when missing, empty or not a PDF."""
        if not self.exists(user, project, pdf_file):
            return None
        size = int(self._run(user, project, ["stat", "-c", "%s", pdf_file]).stdout or 0)
        if size == 0:
            return None
        header = self._run(user, project, ["head", "-c", "4", pdf_file]).stdout
        if not header.startswith(PDF_MAGIC):
            return None
        return size

    def _latexmk(self, user, project, tex_file, out):
        out.add(self._run(user, project, ["latexmk", "-pdf", *_LATEX_FLAGS, tex_file]))

    def _pdflatex(self, user, project, tex_file, out):
        argv = ["pdflatex", *_LATEX_FLAGS, tex_file]
        out.add(self._run(user, project, argv))

        bib = self._run(user, project, ["find", ".", "-name", "*.bib", "-type", "f"])
        if not bib.stdout:
            return
        try:
            out.add(self._run(user, project, ["bibtex", aux_name(tex_file)]))
        except CommandFailed as e:
            out.add(e)  # keep the single-pass PDF
            return
        out.add(self._run(user, project, argv))
        out.add(self._run(user, project, argv))

    def compile(self, user, project, tex_file="main.tex", timer=None):
        tex_file = self.find_main_file(user, project, tex_file)
        pdf_file = pdf_name(tex_file)
        out = _Output()
        failures = []

        for name, strategy in self.strategies:
            try:
                strategy(user, project, tex_file, out)
            except CommandFailed as e:
                out.add(e)
                failures.append(f"{name}: exit {e.exit_code}")
                continue
            finally:
                if timer:
                    timer.mark(name)

            size = self.pdf_size(user, project, pdf_file)
            if size:
                stdout, stderr = out.text()
                write_log({
                    "event": "compiled",
                    "user": user,
                    "project": project,
                    "file": tex_file,
                    "strategy": name,
                })
                return CompileResult(tex_file, pdf_file, name, size, stdout, stderr)
            failures.append(f"{name}: no valid PDF")

        stdout, stderr = out.text()
        write_log({
            "event": "compile_failed",
            "user": user,
            "project": project,
            "file": tex_file,
            "error": "; ".join(failures),
        })
        raise CompileFailed(f"Compilation failed ({'; '.join(failures)})", stdout, stderr)
