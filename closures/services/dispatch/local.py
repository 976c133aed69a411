"""
Local subprocess-based adapter dispatcher.

Runs closures as local processes instead of delivering them to a compute
host. Suitable for development and testing but NOT for production use (no
sandboxing, no image isolation).
"""

import asyncio
import json
import logging
import os
import shutil
import tempfile
from collections import OrderedDict
from pathlib import Path
from typing import Optional

from closures.core.exceptions import DispatchFailed
from closures.models.description import RuntimeKind
from closures.models.dispatch import ContainerStats, ExecutionOutcome, ExecutionRequest
from closures.services.dispatch.base import AdapterDispatcher

logger = logging.getLogger(__name__)

PYTHON_WRAPPER = '''
"""Wrapper script for closure execution."""
import json
import sys
import traceback


def main():
    with open("payload.json", "r", encoding="utf-8") as f:
        payload = json.load(f)

    with open("closure_code.py", "r", encoding="utf-8") as f:
        code = f.read()

    namespace = {"__name__": "__closure__", "inputs": payload["inputs"]}

    try:
        exec(compile(code, "closure_code.py", "exec"), namespace)

        output_names = payload["output_names"]
        if output_names:
            outputs = {name: namespace[name] for name in output_names if name in namespace}
        else:
            outputs = namespace.get("outputs") or {}

        with open("result.json", "w", encoding="utf-8") as f:
            json.dump({"outputs": outputs}, f, default=str)

    except Exception as e:
        with open("result.json", "w", encoding="utf-8") as f:
            json.dump({"error": f"{type(e).__name__}: {e}", "traceback": traceback.format_exc()}, f)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
'''

NODE_WRAPPER = '''
const fs = require("fs");
const vm = require("vm");

const payload = JSON.parse(fs.readFileSync("payload.json", "utf8"));
const code = fs.readFileSync("closure_code.js", "utf8");

const context = {
  inputs: payload.inputs,
  console: console,
  print: (...args) => console.log(...args),
  require: require,
};

try {
  vm.runInNewContext(code, context, { filename: "closure_code.js" });

  let outputs = {};
  if (payload.output_names.length > 0) {
    for (const name of payload.output_names) {
      if (name in context) {
        outputs[name] = context[name];
      }
    }
  } else if (context.outputs && typeof context.outputs === "object") {
    outputs = context.outputs;
  }
  fs.writeFileSync("result.json", JSON.stringify({ outputs: outputs }));
} catch (e) {
  const message = e && e.message ? `${e.name}: ${e.message}` : String(e);
  fs.writeFileSync("result.json", JSON.stringify({ error: message }));
  console.error(`Error: ${message}`);
  process.exit(1);
}
'''


class LocalAdapterDispatcher(AdapterDispatcher):
    """
    Adapter dispatcher running closures as local subprocesses.

    Supports the python runtime (an exec-based wrapper) and the nodejs
    runtime (a vm-based wrapper). Inputs are bound to ``inputs``; the
    declared outputs are read back from variables of the same name.

    Features:
    - stdout/stderr captured as closure logs
    - Environment variable isolation
    - Working directory isolation
    - Cancellation kills the process
    """

    def __init__(
        self,
        python_executable: str = "python",
        node_executable: str = "node",
        request_grace_seconds: float = 5.0,
        finished_history: int = 1000,
    ):
        """
        Initialize the LocalAdapterDispatcher.

        Args:
            python_executable: Path to Python executable.
            node_executable: Path to Node.js executable.
            request_grace_seconds: Extra seconds granted beyond the closure timeout.
            finished_history: Number of finished executions kept for stats.
        """
        self._executables = {
            RuntimeKind.PYTHON: python_executable,
            RuntimeKind.NODEJS: node_executable,
        }
        self._grace = request_grace_seconds
        self._running: dict[str, asyncio.subprocess.Process] = {}
        self._finished: OrderedDict[str, None] = OrderedDict()
        self._finished_history = finished_history

    async def dispatch(
        self,
        host_ref: str,
        request: ExecutionRequest,
    ) -> ExecutionOutcome:
        executable = self._executables.get(request.runtime)
        if executable is None:
            raise DispatchFailed(
                f"Runtime {request.runtime.value} is not supported by the local dispatcher"
            )
        if not request.source:
            raise DispatchFailed("The local dispatcher only runs inline source")

        logger.info(f"LocalAdapterDispatcher executing {request.execution_id}")
        workspace = Path(tempfile.mkdtemp(prefix=f"closure_{request.execution_id}_"))

        try:
            script = self._prepare_workspace(workspace, request)
            env = self._create_isolated_env(workspace)
            timeout = request.resources.timeout_seconds + self._grace

            stdout, stderr, return_code = await self._run_subprocess(
                executable,
                script,
                cwd=workspace,
                env=env,
                timeout=timeout,
                execution_id=request.execution_id,
            )

            result_data: dict = {}
            result_file = workspace / "result.json"
            if result_file.exists():
                try:
                    result_data = json.loads(result_file.read_text(encoding="utf-8"))
                except json.JSONDecodeError:
                    pass

            logs = stdout + stderr
            if return_code == 0:
                return ExecutionOutcome(outputs=result_data.get("outputs") or {}, logs=logs)

            if return_code < 0:
                error = "execution cancelled"
            else:
                error = result_data.get("error") or stderr or f"Process exited with code {return_code}"
            return ExecutionOutcome(error=error, logs=logs)

        finally:
            self._running.pop(request.execution_id, None)
            self._remember_finished(request.execution_id)
            try:
                shutil.rmtree(workspace)
            except OSError as e:
                logger.warning(f"Failed to cleanup workspace: {e}")

    def _prepare_workspace(self, workspace: Path, request: ExecutionRequest) -> Path:
        """Write source, payload and wrapper; return the wrapper path."""
        payload = {"inputs": request.inputs, "output_names": request.output_names}
        (workspace / "payload.json").write_text(json.dumps(payload), encoding="utf-8")

        if request.runtime == RuntimeKind.PYTHON:
            (workspace / "closure_code.py").write_text(request.source, encoding="utf-8")
            wrapper = workspace / "wrapper.py"
            wrapper.write_text(PYTHON_WRAPPER, encoding="utf-8")
        else:
            (workspace / "closure_code.js").write_text(request.source, encoding="utf-8")
            wrapper = workspace / "wrapper.js"
            wrapper.write_text(NODE_WRAPPER, encoding="utf-8")
        return wrapper

    async def _run_subprocess(
        self,
        executable: str,
        script: Path,
        cwd: Path,
        env: dict[str, str],
        timeout: float,
        execution_id: str,
    ) -> tuple[str, str, int]:
        """
        Run a wrapper script and wait for it.

        Returns:
            Tuple of (stdout, stderr, return_code).

        Raises:
            DispatchFailed: If the process cannot start or outlives the timeout.
        """
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                str(script),
                cwd=cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise DispatchFailed(f"Failed to start {executable}: {e}") from e

        self._running[execution_id] = process

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            raise DispatchFailed(f"Execution {execution_id} did not finish in {timeout}s")
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        return (
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            process.returncode if process.returncode is not None else 0,
        )

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    def _create_isolated_env(self, workspace: Path) -> dict[str, str]:
        """
        Create an isolated environment for subprocess execution.

        Args:
            workspace: Working directory path.

        Returns:
            Environment variables dictionary.
        """
        env = {
            "PATH": os.environ.get("PATH", "/usr/bin:/bin"),
            "PYTHONDONTWRITEBYTECODE": "1",
            "PYTHONUNBUFFERED": "1",
            # Keep user configs out of reach
            "HOME": str(workspace),
            "USERPROFILE": str(workspace),
        }

        virtual_env = os.environ.get("VIRTUAL_ENV")
        if virtual_env:
            env["VIRTUAL_ENV"] = virtual_env
            env["PATH"] = f"{virtual_env}/bin:{env['PATH']}"

        # Windows needs SYSTEMROOT to start interpreters
        if os.environ.get("SYSTEMROOT"):
            env["SYSTEMROOT"] = os.environ["SYSTEMROOT"]

        return env

    def _remember_finished(self, execution_id: str) -> None:
        self._finished[execution_id] = None
        self._finished.move_to_end(execution_id)
        while len(self._finished) > self._finished_history:
            self._finished.popitem(last=False)

    async def fetch_stats(self, host_ref: str, execution_id: str) -> ContainerStats:
        process = self._running.get(execution_id)
        if process is None and execution_id not in self._finished:
            raise DispatchFailed(f"Unknown execution {execution_id}")
        stopped = process is None or process.returncode is not None
        return ContainerStats(execution_id=execution_id, container_stopped=stopped)

    async def cancel(self, host_ref: str, execution_id: str) -> bool:
        process = self._running.get(execution_id)
        if process is None or process.returncode is not None:
            return False

        try:
            await self._kill(process)
            return True
        except OSError as e:
            logger.warning(f"Failed to cancel execution {execution_id}: {e}")
            return False

    async def close(self) -> None:
        for process in list(self._running.values()):
            await self._kill(process)
        self._running.clear()

    @property
    def running_count(self) -> int:
        """Get the number of currently running processes."""
        return len(self._running)
