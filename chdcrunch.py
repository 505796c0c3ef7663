#!/usr/bin/env python3

import argparse
import logging
import os
import re
import shlex
import shutil
import subprocess
import sys
import tempfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from datetime import datetime
from threading import Lock
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

OUT_EXT = ".chd"
LOG_DIR_NAME = ".chd_logs"
EXTRACT_PREFIX = ".extract_"

ARCHIVE_EXTS = (".7z", ".zip")
CD_EXTS = (".cue", ".gdi", ".toc")
DVD_EXTS = (".iso", ".gcm")
# chdman cannot read these; compound suffixes are matched before .iso/.gcm
UNSUPPORTED_EXTS = (".nkit.iso", ".nkit.gcm", ".nkit", ".cso", ".wbfs")

OUTCOMES = ("OK", "FAIL", "SKIP", "EXIST", "WARN_UNSUPPORTED", "WOULD")

TIMEOUT_RC = 124
NOT_FOUND_RC = 127

DEFAULT_JOBS = max(1, min(os.cpu_count() or 4, 6))

PLATFORM_EXTS: Dict[str, Tuple[str, ...]] = {
    "psx": (".cue", ".toc"),
    "ps2": (".iso",),
    "dreamcast": (".gdi",),
    "gamecube": (".gcm",),
}

_PLATFORM_ALIASES: Dict[str, str] = {
    "ps1": "psx",
    "psone": "psx",
    "playstation": "psx",
    "playstation2": "ps2",
    "playstation 2": "ps2",
    "dc": "dreamcast",
    "gc": "gamecube",
    "gcn": "gamecube",
    "ngc": "gamecube",
}

_NO_FILTER = ("", "none", "all")

logger = logging.getLogger("chdcrunch")


class ConversionError(Exception):
    outcome = "FAIL"
    state = "failed"

    def __init__(self, message: str, output: Optional[str] = None) -> None:
        super().__init__(message)
        self.output = output


class ExtractionFailure(ConversionError):
    state = "extract_failed"


class NoConvertibleSource(ConversionError):
    outcome = "SKIP"
    state = "no_source"


class RecognizedUnsupportedFormat(ConversionError):
    outcome = "WARN_UNSUPPORTED"
    state = "unsupported"


class ConversionToolFailure(ConversionError):
    state = "convert_failed"


class OutputAlreadyExists(ConversionError):
    outcome = "EXIST"
    state = "exists"


@dataclass(frozen=True)
class Config:
    rom_dir: str
    out_dir: Optional[str] = None
    log_dir: Optional[str] = None
    recursive: bool = False
    jobs: int = DEFAULT_JOBS
    dry_run: bool = False
    force: bool = False
    platform: Optional[str] = None
    keep_archive: bool = False
    sevenzip: Optional[str] = None
    chdman: str = "chdman"
    timeout: Optional[float] = None

    @property
    def effective_log_dir(self) -> str:
        return self.log_dir or os.path.join(self.rom_dir, LOG_DIR_NAME)


@dataclass
class Job:
    title: str
    kind: str  # archive | descriptor | image
    source_root: str
    source_paths: List[str]
    platform: Optional[str] = None
    state: str = "discovered"

    @property
    def source(self) -> str:
        return self.source_paths[0]


@dataclass
class SourceSet:
    kind: str  # cd | dvd
    primary: str
    dependents: List[str] = field(default_factory=list)

    @property
    def paths(self) -> List[str]:
        return [self.primary] + [p for p in self.dependents if p != self.primary]


@dataclass(frozen=True)
class ConversionResult:
    title: str
    outcome: str
    output: Optional[str] = None
    message: Optional[str] = None


# ---------------------------------------------------------------------------
# classification


def _disc_ext(path: str) -> str:
    name = os.path.basename(path).lower()
    for ext in UNSUPPORTED_EXTS:
        if name.endswith(ext):
            return ext
    return os.path.splitext(name)[1]


def classify(path: str) -> Optional[str]:
    ext = _disc_ext(path)
    if ext in ARCHIVE_EXTS:
        return "archive"
    if ext in CD_EXTS:
        return "cd"
    if ext in DVD_EXTS:
        return "dvd"
    if ext in UNSUPPORTED_EXTS:
        return "unsupported"
    return None


def normalize_platform(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    key = name.strip().lower()
    if key in _NO_FILTER:
        return None
    if key in PLATFORM_EXTS:
        return key
    return _PLATFORM_ALIASES.get(key)


def platform_for(path: str) -> Optional[str]:
    ext = _disc_ext(path)
    for tag, exts in PLATFORM_EXTS.items():
        if ext in exts:
            return tag
    return None


def platform_accepts(path: str, platform: Optional[str]) -> bool:
    if not platform:
        return classify(path) in ("cd", "dvd")
    return _disc_ext(path) in PLATFORM_EXTS.get(platform, ())


def _should_ignore_name(name: str) -> bool:
    return name.startswith("._")


def select_source(directory: str) -> Optional[Tuple[str, str]]:
    first: Dict[str, str] = {}
    for name in sorted(os.listdir(directory)):
        path = os.path.join(directory, name)
        if _should_ignore_name(name) or not os.path.isfile(path):
            continue
        kind = classify(path)
        if kind in ("cd", "dvd", "unsupported"):
            first.setdefault(kind, path)
    for kind in ("cd", "dvd", "unsupported"):
        if kind in first:
            return kind, first[kind]
    return None


# ---------------------------------------------------------------------------
# descriptor parsing

_FILE_DIRECTIVE = re.compile(
    r'^\s*(?:FILE|DATAFILE)\s+(?:"([^"]*)"|(\S+))', re.IGNORECASE
)
_GDI_TRACK = re.compile(r'^\s*\d+\s+\d+\s+\d+\s+\d+\s+(?:"([^"]*)"|(\S+))')


def _descriptor_refs(descriptor: str) -> List[str]:
    pattern = _GDI_TRACK if descriptor.lower().endswith(".gdi") else _FILE_DIRECTIVE
    refs: List[str] = []
    with open(descriptor, "r", encoding="utf-8", errors="surrogateescape") as fh:
        for line in fh:
            m = pattern.match(line)
            if not m:
                continue
            ref = m.group(1) if m.group(1) is not None else m.group(2)
            if ref:
                refs.append(ref)
    return refs


def cue_list_sources(
    descriptor: str, log: Optional[logging.Logger] = None
) -> List[str]:
    log = log or logger
    try:
        refs = _descriptor_refs(descriptor)
    except OSError as exc:
        log.debug("cannot read descriptor %s: %s", descriptor, exc)
        return []
    base = os.path.dirname(os.path.abspath(descriptor))
    own = os.path.abspath(descriptor)
    found: List[str] = []
    for ref in refs:
        path = os.path.normpath(os.path.join(base, ref.replace("\\", os.sep)))
        if path == own or path in found:
            continue
        if os.path.exists(path):
            found.append(path)
        else:
            log.debug("%s references missing track %s", descriptor, ref)
    return found


def resolve_source_set(
    kind: str, primary: str, log: Optional[logging.Logger] = None
) -> SourceSet:
    dependents = cue_list_sources(primary, log) if kind == "cd" else []
    return SourceSet(kind=kind, primary=primary, dependents=dependents)


# ---------------------------------------------------------------------------
# destinations


def dest_dir_for(src_dir: str, rom_dir: str, out_dir: Optional[str]) -> str:
    if not out_dir:
        return src_dir
    try:
        rel = os.path.relpath(os.path.abspath(src_dir), os.path.abspath(rom_dir))
    except ValueError:
        rel = os.pardir
    if rel == os.curdir or rel == os.pardir or rel.startswith(os.pardir + os.sep):
        return os.path.normpath(out_dir)
    return os.path.normpath(os.path.join(out_dir, rel))


def chd_path_for(src_file: str, cfg: Config) -> str:
    stem = os.path.splitext(os.path.basename(src_file))[0]
    outdir = dest_dir_for(os.path.dirname(src_file), cfg.rom_dir, cfg.out_dir)
    return os.path.join(outdir, stem + OUT_EXT)


def _is_nonempty_file(path: str) -> bool:
    try:
        return os.path.isfile(path) and os.path.getsize(path) > 0
    except OSError:
        return False


# ---------------------------------------------------------------------------
# per-job logs


def sanitize_title(title: str) -> str:
    t = re.sub(r"[^\w.\-]", "", title.replace(" ", "_"))
    return t or "untitled"


def _timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _format_command(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(part)) for part in cmd)


_EVENT_LEVELS = {
    "RUN": logging.INFO,
    "DRYRUN": logging.WARNING,
    "DELETE": logging.INFO,
    "SUCCESS": logging.INFO,
    "SKIP": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}


class JobLog:
    """Append-only event stream for one job title.

    With ``path`` unset the stream lives only in ``lines`` (dry runs create
    no files); with a path, lines go straight to the file and are not kept.
    Every event is echoed to the run logger.
    """

    def __init__(
        self,
        title: str,
        source: str,
        path: Optional[str] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.title = title
        self.source = source
        self.path = path
        self.lines: List[str] = []
        self._log = log or logger
        self._append([f"Title: {title}", f"Source: {source}", ""])

    def _append(self, lines: List[str]) -> None:
        if self.path is None:
            self.lines.extend(lines)
            return
        with open(self.path, "a", encoding="utf-8", errors="replace") as fh:
            for line in lines:
                fh.write(line + "\n")

    def event(self, level: str, message: str) -> None:
        self._append([f"[{_timestamp()}] {level}: {message}"])
        self._log.log(
            _EVENT_LEVELS.get(level, logging.INFO), "%s: %s", self.title, message
        )

    def output(self, text: str) -> None:
        chunk = text.rstrip()
        if not chunk:
            return
        self._append(chunk.splitlines())
        self._log.debug("%s output:\n%s", self.title, chunk)

    def events(self, level: Optional[str] = None) -> List[str]:
        marker = f"] {level}: " if level else "] "
        return [ln for ln in self.lines if ln.startswith("[") and marker in ln]


def open_job_log(
    job: Job, cfg: Config, log: Optional[logging.Logger] = None
) -> JobLog:
    if cfg.dry_run:
        return JobLog(job.title, job.source, None, log)
    log_dir = cfg.effective_log_dir
    os.makedirs(log_dir, exist_ok=True)
    path = os.path.join(log_dir, sanitize_title(job.title) + ".log")
    return JobLog(job.title, job.source, path, log)


# ---------------------------------------------------------------------------
# external tools


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", "replace")
    return str(data)


def run_and_log(
    cmd: Sequence[str], job_log: JobLog, timeout: Optional[float] = None
) -> int:
    job_log.event("RUN", _format_command(cmd))
    try:
        proc = subprocess.run(
            list(cmd),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        job_log.output(_decode(exc.output))
        job_log.event("ERROR", f"timed out after {timeout:g}s: {cmd[0]}")
        return TIMEOUT_RC
    except OSError as exc:
        job_log.event("ERROR", f"cannot execute {cmd[0]}: {exc}")
        return NOT_FOUND_RC
    job_log.output(_decode(proc.stdout))
    return proc.returncode


def extract_command(cfg: Config, archive: str, workdir: str) -> List[str]:
    return [cfg.sevenzip or "7z", "x", "-y", f"-o{workdir}", "--", archive]


def chdman_command(
    cfg: Config, kind: str, input_path: str, output_path: str
) -> List[str]:
    mode = "createcd" if kind == "cd" else "createdvd"
    cmd = [cfg.chdman, mode, "-i", input_path, "-o", output_path]
    if cfg.force:
        cmd.append("--force")
    return cmd


def ensure_dir(
    path: str, dry_run: bool = False, job_log: Optional[JobLog] = None
) -> None:
    if dry_run:
        if job_log is not None and not os.path.isdir(path):
            job_log.event("DRYRUN", f"would mkdir -p -- {path}")
        return
    os.makedirs(path, exist_ok=True)


def _discard_partial(path: str, job_log: JobLog) -> None:
    if not os.path.lexists(path):
        return
    try:
        os.remove(path)
    except OSError as exc:
        job_log.event("WARN", f"could not remove partial output {path}: {exc}")
        return
    job_log.event("DELETE", f"partial output {path}")


def to_chd(sources: SourceSet, chd: str, cfg: Config, job_log: JobLog) -> None:
    # a file that was there before (--force) is not ours to remove
    preexisting = os.path.lexists(chd)
    cmd = chdman_command(cfg, sources.kind, sources.primary, chd)
    rc = run_and_log(cmd, job_log, cfg.timeout)
    if rc != 0:
        if not preexisting:
            _discard_partial(chd, job_log)
        raise ConversionToolFailure(
            f"chdman failed for {os.path.basename(sources.primary)} (exit {rc})", chd
        )
    if not _is_nonempty_file(chd):
        raise ConversionToolFailure(f"CHD not created: {chd}", chd)


def safe_cleanup_sources(
    chd: str, sources: Iterable[str], job_log: JobLog, dry_run: bool = False
) -> List[str]:
    candidates = list(sources)
    if dry_run:
        if candidates:
            job_log.event("DRYRUN", "would delete: " + " ".join(candidates))
        return []
    if not _is_nonempty_file(chd):
        return []
    deleted: List[str] = []
    for src in candidates:
        if not os.path.lexists(src):
            continue
        job_log.event("DELETE", src)
        try:
            os.remove(src)
        except OSError as exc:
            job_log.event("WARN", f"could not delete {src}: {exc}")
            continue
        deleted.append(src)
    return deleted


# ---------------------------------------------------------------------------
# job resolution


def _unsupported_notice(path: str) -> str:
    ext = _disc_ext(path).lstrip(".")
    if ext in ("cso", "wbfs", "nkit", "nkit.iso", "nkit.gcm"):
        return (
            f"'{os.path.basename(path)}' is {ext}; chdman cannot convert these "
            "directly. Convert back to ISO first."
        )
    return f"unsupported source for CHD: {path}"


def _check_existing(chd: str, cfg: Config) -> None:
    if not cfg.force and _is_nonempty_file(chd):
        raise OutputAlreadyExists(f"CHD already exists: {chd}", chd)


def _convert(
    job: Job,
    sources: SourceSet,
    chd: str,
    cfg: Config,
    job_log: JobLog,
    cleanup: Sequence[str],
) -> ConversionResult:
    cmd = chdman_command(cfg, sources.kind, sources.primary, chd)
    if cfg.dry_run:
        ensure_dir(os.path.dirname(chd), True, job_log)
        job_log.event("DRYRUN", _format_command(cmd))
        safe_cleanup_sources(chd, cleanup, job_log, dry_run=True)
        return ConversionResult(job.title, "WOULD", chd)

    ensure_dir(os.path.dirname(chd))
    job.state = "converting"
    to_chd(sources, chd, cfg, job_log)
    job.state = "converted"
    job_log.event("SUCCESS", f"created {chd}")
    if cleanup:
        job.state = "cleaning_up"
        safe_cleanup_sources(chd, cleanup, job_log)
    return ConversionResult(job.title, "OK", chd)


def process_loose(job: Job, cfg: Config, job_log: JobLog) -> ConversionResult:
    src = job.source
    kind = classify(src)
    if kind not in ("cd", "dvd"):
        raise RecognizedUnsupportedFormat(_unsupported_notice(src))
    chd = chd_path_for(src, cfg)
    _check_existing(chd, cfg)

    job.state = "resolving"
    sources = resolve_source_set(kind, src)
    job.source_paths = sources.paths
    job.platform = platform_for(src)
    job.state = "resolved"
    return _convert(job, sources, chd, cfg, job_log, sources.paths)


def _resolve_extracted(
    job: Job, workdir: str, cfg: Config, job_log: JobLog
) -> SourceSet:
    job.state = "resolving"
    picked = select_source(workdir)
    if picked is None:
        raise NoConvertibleSource(
            f"no convertible image found in {os.path.basename(job.source)}"
        )
    kind, primary = picked
    if kind == "unsupported":
        raise RecognizedUnsupportedFormat(_unsupported_notice(primary))
    if cfg.platform and not platform_accepts(primary, cfg.platform):
        raise NoConvertibleSource(
            f"{os.path.basename(primary)} is not a {cfg.platform} image"
        )
    sources = resolve_source_set(kind, primary)
    job.platform = platform_for(primary)
    job.source_paths = [job.source] + sources.paths
    job.state = "resolved"
    return sources


def process_archive(job: Job, cfg: Config, job_log: JobLog) -> ConversionResult:
    archive = job.source
    chd = chd_path_for(archive, cfg)
    _check_existing(chd, cfg)

    if cfg.dry_run:
        planned_dir = os.path.join(job.source_root, EXTRACT_PREFIX + "*")
        cmd = extract_command(cfg, archive, planned_dir)
        job_log.event("DRYRUN", f"would extract: {_format_command(cmd)}")
        ensure_dir(os.path.dirname(chd), True, job_log)
        if not cfg.keep_archive:
            safe_cleanup_sources(chd, [archive], job_log, dry_run=True)
        return ConversionResult(job.title, "WOULD", chd)

    job.state = "extracting"
    workdir = tempfile.mkdtemp(
        prefix=f"{EXTRACT_PREFIX}{sanitize_title(job.title)}_",
        dir=os.path.dirname(archive),
    )
    try:
        rc = run_and_log(extract_command(cfg, archive, workdir), job_log, cfg.timeout)
        if rc != 0:
            raise ExtractionFailure(
                f"extraction failed for {os.path.basename(archive)} (exit {rc})"
            )
        job.state = "extracted"
        sources = _resolve_extracted(job, workdir, cfg, job_log)
        cleanup = sources.paths if cfg.keep_archive else sources.paths + [archive]
        result = _convert(job, sources, chd, cfg, job_log, cleanup)
        if cfg.keep_archive:
            job_log.event("SUCCESS", f"archive kept: {archive}")
        return result
    finally:
        shutil.rmtree(workdir, ignore_errors=True)


def process_job(
    job: Job, cfg: Config, log: Optional[logging.Logger] = None
) -> ConversionResult:
    log = log or logger
    job_log: Optional[JobLog] = None
    try:
        job_log = open_job_log(job, cfg, log)
        if job.kind == "archive":
            result = process_archive(job, cfg, job_log)
        else:
            result = process_loose(job, cfg, job_log)
        job.state = "completed"
        return result
    except ConversionError as exc:
        job.state = exc.state
        if job_log is not None:
            level = {"EXIST": "SKIP", "FAIL": "ERROR"}.get(exc.outcome, "WARN")
            job_log.event(level, str(exc))
        return ConversionResult(job.title, exc.outcome, exc.output, str(exc))
    except Exception as exc:
        job.state = "failed"
        if job_log is not None:
            job_log.event("ERROR", f"unexpected error: {exc!r}")
        log.exception("job %s failed unexpectedly", job.title)
        return ConversionResult(job.title, "FAIL", None, repr(exc))


# ---------------------------------------------------------------------------
# aggregation and scheduling


class ResultTally:
    def __init__(self) -> None:
        self._lock = Lock()
        self._results: List[ConversionResult] = []

    def record(self, result: ConversionResult) -> None:
        with self._lock:
            self._results.append(result)

    @property
    def results(self) -> List[ConversionResult]:
        with self._lock:
            return list(self._results)

    @property
    def total(self) -> int:
        with self._lock:
            return len(self._results)

    def counts(self) -> Dict[str, int]:
        counts = {outcome: 0 for outcome in OUTCOMES}
        for result in self.results:
            counts[result.outcome] = counts.get(result.outcome, 0) + 1
        return counts

    def format_summary(self) -> str:
        lines = [f"Jobs: {self.total}"]
        lines.extend(f"  {name}: {n}" for name, n in self.counts().items())
        return "\n".join(lines)


def _claim_outputs(
    jobs: List[Job], cfg: Config, log: logging.Logger
) -> Tuple[List[Job], List[ConversionResult]]:
    # one writer per CHD; keyed case-insensitively for macOS/Windows volumes
    owners: Dict[str, Job] = {}
    runnable: List[Job] = []
    skipped: List[ConversionResult] = []
    for job in jobs:
        if classify(job.source) == "unsupported":
            runnable.append(job)
            continue
        chd = chd_path_for(job.source, cfg)
        owner = owners.setdefault(chd.casefold(), job)
        if owner is job:
            runnable.append(job)
            continue
        job.state = "skipped"
        message = (
            f"{os.path.basename(job.source)} would also write {chd}; "
            f"already claimed by {os.path.basename(owner.source)}"
        )
        log.warning("%s: %s", job.title, message)
        skipped.append(ConversionResult(job.title, "SKIP", chd, message))
    return runnable, skipped


def _run_phase(
    name: str,
    jobs: List[Job],
    cfg: Config,
    tally: ResultTally,
    log: logging.Logger,
) -> None:
    if not jobs:
        return
    jobs, skipped = _claim_outputs(jobs, cfg, log)
    for result in skipped:
        tally.record(result)
    workers = max(1, cfg.jobs)
    log.info("%s phase: %d job(s), %d worker(s)", name, len(jobs), workers)
    with ThreadPoolExecutor(
        max_workers=workers, thread_name_prefix=f"chd-{name}"
    ) as pool:
        futures = {pool.submit(process_job, job, cfg, log): job for job in jobs}
        for future in as_completed(futures):
            job = futures[future]
            try:
                result = future.result()
            except Exception as exc:
                log.error("unexpected worker failure for %s: %s", job.title, exc)
                result = ConversionResult(job.title, "FAIL", None, repr(exc))
            tally.record(result)
            log.info("%s: %s", result.outcome, job.title)


def run_jobs(
    archive_jobs: List[Job],
    loose_jobs: List[Job],
    cfg: Config,
    log: Optional[logging.Logger] = None,
    tally: Optional[ResultTally] = None,
) -> ResultTally:
    log = log or logger
    tally = tally if tally is not None else ResultTally()
    _run_phase("archive", archive_jobs, cfg, tally, log)
    # CD descriptors finish before DVD images so a same-stem .iso sees EXIST
    cds = [job for job in loose_jobs if job.kind == "descriptor"]
    images = [job for job in loose_jobs if job.kind != "descriptor"]
    _run_phase("cd", cds, cfg, tally, log)
    _run_phase("dvd", images, cfg, tally, log)
    return tally


# ---------------------------------------------------------------------------
# discovery


def _collect_files(cfg: Config) -> List[str]:
    root = cfg.rom_dir
    skip_dir = os.path.abspath(cfg.effective_log_dir)
    files: List[str] = []
    if not cfg.recursive:
        for name in sorted(os.listdir(root)):
            path = os.path.join(root, name)
            if not _should_ignore_name(name) and os.path.isfile(path):
                files.append(path)
        return files
    for dirpath, dirs, names in os.walk(root):
        dirs[:] = sorted(
            d
            for d in dirs
            if not _should_ignore_name(d)
            and not d.startswith(EXTRACT_PREFIX)
            and os.path.abspath(os.path.join(dirpath, d)) != skip_dir
        )
        for name in sorted(names):
            if not _should_ignore_name(name):
                files.append(os.path.join(dirpath, name))
    return files


def _new_job(path: str, kind: str) -> Job:
    title = os.path.splitext(os.path.basename(path))[0]
    return Job(
        title=title,
        kind=kind,
        source_root=os.path.dirname(path),
        source_paths=[path],
        platform=platform_for(path),
    )


def discover_jobs(
    cfg: Config, log: Optional[logging.Logger] = None
) -> Tuple[List[Job], List[Job]]:
    log = log or logger
    archives: List[Job] = []
    cds: List[Job] = []
    dvds: List[Job] = []
    unsupported: List[Job] = []
    for path in _collect_files(cfg):
        kind = classify(path)
        if kind == "archive":
            archives.append(_new_job(path, "archive"))
        elif kind in ("cd", "dvd") and platform_accepts(path, cfg.platform):
            if kind == "cd":
                cds.append(_new_job(path, "descriptor"))
            else:
                dvds.append(_new_job(path, "image"))
        elif kind == "unsupported" and not cfg.platform:
            # scheduled only so the run reports WARN_UNSUPPORTED for them
            unsupported.append(_new_job(path, "image"))
    log.info("archives found: %d", len(archives))
    log.info("CD-like images found: %d", len(cds))
    log.info("DVD-like images found: %d", len(dvds))
    if unsupported:
        log.info("unsupported images found: %d", len(unsupported))
    return archives, cds + dvds + unsupported


# ---------------------------------------------------------------------------
# preflight and entry point


def _find_tool(explicit: Optional[str], candidates: Sequence[str]) -> Optional[str]:
    if explicit:
        found = shutil.which(explicit)
        if found:
            return found
        return explicit if os.path.isfile(explicit) else None
    for name in candidates:
        found = shutil.which(name)
        if found:
            return found
    return None


def preflight(cfg: Config, log: Optional[logging.Logger] = None) -> Config:
    log = log or logger
    sevenzip = _find_tool(cfg.sevenzip, ("7zz", "7z"))
    chdman = _find_tool(cfg.chdman, ("chdman",))
    missing = False
    if not sevenzip:
        log.error("missing requirement: 7-Zip CLI (7zz or 7z)")
        missing = True
    if not chdman:
        log.error("missing requirement: chdman (from mame-tools or mame)")
        missing = True
    if missing:
        sys.exit(2)
    log.info("preflight ok: using %s and %s", sevenzip, chdman)
    return replace(cfg, sevenzip=sevenzip, chdman=chdman)


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, cast, default):
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return cast(value.strip())
    except ValueError:
        logging.warning("ignoring invalid %s=%r", name, value)
        return default


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description="Convert ROM archives and disc images to CHD with chdman."
    )
    ap.add_argument(
        "--rom-dir",
        default=os.getenv("ROM_DIR", "."),
        help="Root directory containing ROMs.",
    )
    ap.add_argument(
        "--out-dir",
        default=os.getenv("OUT_DIR") or None,
        help="Write CHDs under this root, mirroring the ROM directory structure.",
    )
    ap.add_argument(
        "--log-dir",
        default=os.getenv("LOG_DIR") or None,
        help=f"Directory for per-title logs (default: <rom-dir>/{LOG_DIR_NAME}).",
    )
    ap.add_argument(
        "--recursive",
        action="store_true",
        default=_env_flag("RECURSIVE"),
        help="Recurse into subdirectories.",
    )
    ap.add_argument(
        "--jobs",
        type=int,
        default=_env_number("JOBS", int, DEFAULT_JOBS),
        help="Parallel workers.",
    )
    ap.add_argument(
        "--dry-run",
        action="store_true",
        default=_env_flag("DRYRUN"),
        help="Print actions only; nothing is extracted, converted, or deleted.",
    )
    ap.add_argument(
        "--force",
        action="store_true",
        default=_env_flag("FORCE"),
        help="Overwrite existing CHD files.",
    )
    ap.add_argument(
        "--platform",
        default=os.getenv("PLATFORM") or None,
        help="Only process one platform: " + ", ".join(sorted(PLATFORM_EXTS)) + ".",
    )
    ap.add_argument(
        "--keep-archive",
        action="store_true",
        default=_env_flag("KEEP_ARCHIVE"),
        help="Keep source archives after a successful conversion.",
    )
    ap.add_argument(
        "--sevenzip",
        default=os.getenv("SEVENZIP_BIN") or None,
        help="Extractor binary (default: 7zz, then 7z).",
    )
    ap.add_argument(
        "--chdman",
        default=os.getenv("CHDMAN_BIN") or "chdman",
        help="chdman binary.",
    )
    ap.add_argument(
        "--timeout",
        type=float,
        default=_env_number("TIMEOUT", float, None),
        help="Per-command timeout in seconds (default: none).",
    )
    ap.add_argument(
        "--check-only",
        action="store_true",
        default=_env_flag("CHECK_ONLY"),
        help="Run the tool preflight and exit.",
    )
    ap.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv).",
    )
    return ap


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    level = (
        logging.WARNING
        if args.verbose == 0
        else (logging.INFO if args.verbose == 1 else logging.DEBUG)
    )
    logging.basicConfig(
        level=level, stream=sys.stderr, format="%(levelname)s: %(message)s"
    )

    platform = normalize_platform(args.platform)
    requested = (args.platform or "").strip().lower()
    if platform is None and requested not in _NO_FILTER:
        logging.error(
            "unknown --platform value: %s; valid: %s",
            args.platform,
            ", ".join(sorted(PLATFORM_EXTS)),
        )
        sys.exit(2)

    rom_dir = os.path.abspath(args.rom_dir)
    if not os.path.isdir(rom_dir):
        logging.error("ROM_DIR does not exist: %s", rom_dir)
        sys.exit(1)

    cfg = Config(
        rom_dir=rom_dir,
        out_dir=os.path.abspath(args.out_dir) if args.out_dir else None,
        log_dir=os.path.abspath(args.log_dir) if args.log_dir else None,
        recursive=args.recursive,
        jobs=max(1, args.jobs),
        dry_run=args.dry_run,
        force=args.force,
        platform=platform,
        keep_archive=args.keep_archive,
        sevenzip=args.sevenzip,
        chdman=args.chdman,
        timeout=args.timeout if args.timeout and args.timeout > 0 else None,
    )
    cfg = preflight(cfg)
    if args.check_only:
        logging.warning("--check-only set; exiting after preflight")
        return

    if cfg.dry_run:
        logging.warning("dry run: no files will be extracted, converted, or deleted")
    else:
        os.makedirs(cfg.effective_log_dir, exist_ok=True)
        if cfg.out_dir:
            os.makedirs(cfg.out_dir, exist_ok=True)
    logging.info("per-title logs: %s", cfg.effective_log_dir)
    if cfg.out_dir:
        logging.info("writing CHDs under %s (mirroring %s)", cfg.out_dir, rom_dir)

    archives, loose = discover_jobs(cfg)
    tally = run_jobs(archives, loose, cfg)
    print(tally.format_summary())


if __name__ == "__main__":
    main()
