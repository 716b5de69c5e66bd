"""
Sequential use-case runner.

A use case is an executor hint plus the request to run it with. The runner
executes them in order against one backend and reports the outcome of each;
a failing use case is reported, it does not stop the run.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple

from ebs_backend.driver import BackendDriver, Request
from ebs_backend.errors import EBSError

logger = logging.getLogger(__name__)

STATUS_OK = "OK"
STATUS_FAILED = "FAILED"


@dataclass
class Report:
    runner: str
    usecase: str
    message: Any
    status: str
    success: bool


class UseCaseRunner:
    name = "ebs.runner"

    def __init__(self, backend: BackendDriver, usecases: Sequence[Tuple[str, Request]]):
        self.backend = backend
        self.usecases = list(usecases)

    def run(self) -> List[Report]:
        execs = self.backend.executors(*[hint for hint, _ in self.usecases])

        reports = []
        for hint, req in self.usecases:
            executor = execs.get(hint)
            if executor is None:
                reports.append(Report(self.name, hint, "executor not available", STATUS_FAILED, False))
                continue

            try:
                resp = executor.exec(req)
            except EBSError as e:
                logger.error("Use case %s failed for %s: %s", hint, req.name, e)
                reports.append(Report(self.name, hint, str(e), STATUS_FAILED, False))
                continue
            except Exception as e:
                logger.exception("Use case %s failed unexpectedly for %s", hint, req.name)
                reports.append(Report(self.name, hint, f"{type(e).__name__}: {e}", STATUS_FAILED, False))
                continue

            logger.info("Use case %s succeeded for %s", hint, req.name)
            reports.append(Report(self.name, hint, resp.values, STATUS_OK, True))

        return reports
