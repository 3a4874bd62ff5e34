import logging
import shutil
from pathlib import Path
from xml.etree import ElementTree

from conveyor.exceptions import PublishError
from conveyor.schemas import ReportSummary
from conveyor.schemas.pipeline import ReportKind

logger = logging.getLogger(__name__)

JUNIT_COUNTERS = ('tests', 'failures', 'errors', 'skipped')


def _local_name(tag: str) -> str:
    return tag.rsplit('}', 1)[-1]


def summarize_junit(path: Path) -> dict[str, int]:
    root = ElementTree.parse(path).getroot()
    if _local_name(root.tag) == 'testsuite':
        suites = [root]
    else:
        suites = [el for el in root if _local_name(el.tag) == 'testsuite']
    res = dict.fromkeys(JUNIT_COUNTERS, 0)
    for suite in suites:
        for counter in JUNIT_COUNTERS:
            res[counter] += int(suite.get(counter) or 0)
    return res


def summarize_dependency_check(path: Path) -> dict[str, int]:
    root = ElementTree.parse(path).getroot()
    res = {'dependencies': 0, 'vulnerabilities': 0}
    for el in root.iter():
        name = _local_name(el.tag)
        if name == 'dependency':
            res['dependencies'] += 1
        elif name == 'vulnerability':
            res['vulnerabilities'] += 1
    return res


SUMMARIZERS = {
    ReportKind.junit: summarize_junit,
    ReportKind.dependency_check: summarize_dependency_check,
}


class FileReportPublisher:
    """Collects report files from the workspace into the run's artifact directory."""

    workdir: Path
    artifacts_dir: Path

    def __init__(self, workdir: Path, artifacts_dir: Path):
        self.workdir = workdir
        self.artifacts_dir = artifacts_dir

    async def publish(
        self, report_path: str, report_kind: ReportKind, *, allow_empty: bool = False
    ) -> ReportSummary:
        if not report_path or Path(report_path).is_absolute():
            raise PublishError(
                f'Report path {report_path!r} must be relative to the workspace'
            )
        try:
            files = sorted(p for p in self.workdir.glob(report_path) if p.is_file())
        except (ValueError, NotImplementedError, OSError) as e:
            raise PublishError(f'Bad report path {report_path!r}: {e}')
        if not files:
            if allow_empty:
                return ReportSummary(kind=report_kind.value, files=[])
            raise PublishError(f'No files match {report_path!r}')

        counts: dict[str, int] = {}
        summarize = SUMMARIZERS.get(report_kind)
        target_dir = self.artifacts_dir / report_kind.value
        published = []
        for file in files:
            relative = file.relative_to(self.workdir)
            if summarize:
                try:
                    for k, v in summarize(file).items():
                        counts[k] = counts.get(k, 0) + v
                except (ElementTree.ParseError, ValueError) as e:
                    raise PublishError(f'Cannot parse {relative}: {e}')
            target = target_dir / relative
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(file, target)
            except OSError as e:
                raise PublishError(f'Cannot copy {relative}: {e}')
            published.append(str(relative))

        logger.info(f'Published {len(published)} {report_kind.value} file(s): {counts}')
        return ReportSummary(kind=report_kind.value, files=published, counts=counts)
