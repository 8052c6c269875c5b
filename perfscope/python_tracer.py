import logging
import platform
from pathlib import Path
from typing import List, Optional, Tuple

from perfscope import probe
from perfscope.complexity import analyze_python
from perfscope.config import settings
from perfscope.events import TrackingOptions
from perfscope.instrument import PROBE_MODULE, instrument_python
from perfscope.registry import EventSink, LanguageHandler
from perfscope.sandbox import SandboxRuntime

logger = logging.getLogger(__name__)

SCRIPT_NAME = "snippet.py"


class PythonHandler(LanguageHandler):
    language_id = "python"
    display_name = "Python"

    def __init__(self, executable: Optional[str] = None, timeout: Optional[float] = None,
                 memory_limit_mb: Optional[int] = None):
        self.executable = executable or settings.python_executable
        self._timeout = timeout or settings.python_timeout
        self.memory_limit_mb = memory_limit_mb if memory_limit_mb is not None else settings.memory_limit_mb
        self.version = ".".join(platform.python_version_tuple()[:2])
        self._probe_source = Path(probe.__file__).read_text(encoding="utf-8")

    @property
    def default_timeout(self) -> float:
        return self._timeout

    def instrument(self, source: str, options: TrackingOptions) -> str:
        return instrument_python(source, options)

    def complexity_hint(self, source: str) -> Tuple[str, str]:
        return analyze_python(source)

    async def execute(
        self,
        instrumented: str,
        stdin: List[str],
        options: TrackingOptions,
        on_event: EventSink,
        *,
        execution_id: str,
        timeout: Optional[float] = None,
    ):
        """
        Runs the instrumented script with `python -u -s` next to a copy of
        the probe module. Unbuffered output keeps frames in step with the
        program; -s keeps user site-packages out of the sandbox.
        """
        async with SandboxRuntime(
            execution_id,
            timeout=timeout or self.default_timeout,
            memory_limit_mb=self.memory_limit_mb,
        ) as runtime:
            runtime.stage(f"{PROBE_MODULE}.py", self._probe_source)
            script = runtime.stage(SCRIPT_NAME, instrumented, instrumented=True)
            logger.debug("Execution %s: running %s", execution_id, script)
            return await runtime.run([self.executable, "-u", "-s", script], stdin, on_event)
