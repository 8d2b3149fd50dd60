"""
Sandboxed Code Dispatcher

Runs a user-supplied Python script with RestrictedPython in a separate
process. The script sees only an allow-list of builtins and the copied
input variables, has no import, file or thread capability, and assigns
its return value to ``result``.

``print(...)`` and ``console.log(...)`` lines are sent to the parent over
a pipe as they happen, so logs written before a timeout are kept. The
wall-clock deadline starts when the child reports it is ready, so
interpreter start-up is bounded separately; the child is killed when
either limit passes.
"""

import asyncio
import json
import logging
import multiprocessing
import operator
import time
from typing import Any, Dict, List, Optional

from RestrictedPython import compile_restricted, safe_builtins
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import full_write_guard, guarded_iter_unpack_sequence, safer_getattr
from RestrictedPython.PrintCollector import PrintCollector

from nodeflow.exceptions import ErrorCode
from ..nodes import CodeConfig, Node, NodeType
from ..outcome import Error, NodeOutcome, Success
from ..template import build_scope
from .base import NodeDispatcher

logger = logging.getLogger(__name__)


SUPPORTED_LANGUAGES = {"python", "py"}

# Config keys that never reach the script
CONFIG_KEYS = {"code", "codeType", "timeout"}

POLL_INTERVAL = 0.01

EXTRA_BUILTINS = {
    "list": list,
    "dict": dict,
    "set": set,
    "sum": sum,
    "min": min,
    "max": max,
    "enumerate": enumerate,
    "any": any,
    "all": all,
    "map": map,
    "filter": filter,
    "sorted": sorted,
    "reversed": reversed,
}

INPLACE_OPERATORS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "|=": operator.ior,
    "^=": operator.ixor,
}


# =============================================================================
# Child process
# =============================================================================


def _inplacevar(op: str, x: Any, y: Any) -> Any:
    return INPLACE_OPERATORS[op](x, y)


def _json_safe(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


class _PipePrintCollector(PrintCollector):
    """Forwards each completed print line to the parent process."""

    def __init__(self, conn, _getattr_=None):
        super().__init__(_getattr_)
        self._conn = conn
        self._buffer = ""

    def write(self, text: str) -> None:
        super().write(text)
        self._buffer += text
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            self._conn.send(("log", line))

    def flush(self) -> None:
        if self._buffer:
            self._conn.send(("log", self._buffer))
            self._buffer = ""


class _Console:
    """``console.log`` for scripts ported from JavaScript nodes."""

    def __init__(self, conn):
        self._conn = conn

    def log(self, *args: Any) -> None:
        self._conn.send(("log", " ".join(str(arg) for arg in args)))


def _run_script(code: str, variables: Dict[str, Any], conn) -> None:
    """Child process entry point."""
    collectors: List[_PipePrintCollector] = []

    def print_factory(_getattr_=None):
        collector = _PipePrintCollector(conn, _getattr_)
        collectors.append(collector)
        return collector

    builtins = dict(safe_builtins)
    builtins.update(EXTRA_BUILTINS)

    restricted_globals: Dict[str, Any] = {
        "__builtins__": builtins,
        "__name__": "node_script",
        "_getattr_": safer_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_write_": full_write_guard,
        "_inplacevar_": _inplacevar,
        "_print_": print_factory,
        "console": _Console(conn),
    }
    restricted_globals.update(variables)

    conn.send(("ready", None))

    try:
        byte_code = compile_restricted(code, filename="<node_script>", mode="exec")
        exec(byte_code, restricted_globals)
        for collector in collectors:
            collector.flush()
        conn.send(("result", _json_safe(restricted_globals.get("result"))))
    except Exception as e:
        for collector in collectors:
            collector.flush()
        conn.send(("error", f"{e.__class__.__name__}: {e}"))
    finally:
        conn.close()


# =============================================================================
# Dispatcher
# =============================================================================


class CodeDispatcher(NodeDispatcher):
    """Dispatcher for ``code`` nodes."""

    node_type = NodeType.CODE.value
    config_model = CodeConfig

    def __init__(
        self,
        default_timeout_ms: int = 10000,
        memory_limit_mb: int = 100,
        startup_timeout_ms: int = 30000,
    ):
        self.default_timeout_ms = default_timeout_ms
        self.memory_limit_mb = memory_limit_mb
        self.startup_timeout_ms = startup_timeout_ms
        self._mp_context = multiprocessing.get_context("spawn")

    async def dispatch(self, node: Node, inputs: Dict[str, Any]) -> NodeOutcome:
        config: CodeConfig = node.config

        if not config.code or not config.code.strip():
            return Error(message="No code provided for execution")
        if config.code_type.lower() not in SUPPORTED_LANGUAGES:
            return Error(message=f"Unsupported language: {config.code_type}")

        timeout_ms = config.timeout or self.default_timeout_ms
        variables = self._collect_variables(inputs, config.variables)

        started = time.perf_counter()
        result, error, logs, timed_out = await self._execute(config.code, variables, timeout_ms)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 3)

        metadata = {
            "execution_time_ms": elapsed_ms,
            "memory_limit_mb": self.memory_limit_mb,
            "logs": logs,
        }

        if timed_out:
            logger.warning(f"Code node {node.id} timed out after {timeout_ms}ms")
            return Error(
                message=f"Code execution timed out after {timeout_ms}ms",
                error_code=ErrorCode.TASK_TIMEOUT,
                metadata=metadata,
            )
        if error is not None:
            logger.info(f"Code node {node.id} raised: {error}")
            return Error(message=error, metadata=metadata)

        return Success(
            outputs={"result": result, "console": logs},
            metadata={"execution_time_ms": elapsed_ms, "memory_limit_mb": self.memory_limit_mb},
        )

    @staticmethod
    def _collect_variables(inputs: Dict[str, Any], allow_list: Optional[List[str]]) -> Dict[str, Any]:
        scope = build_scope(inputs)
        variables = {
            key: value for key, value in scope.items()
            if key not in CONFIG_KEYS and key.isidentifier() and not key.startswith("_")
        }
        if allow_list is not None:
            variables = {key: value for key, value in variables.items() if key in allow_list}
        return _json_safe(variables)

    async def _execute(self, code: str, variables: Dict[str, Any], timeout_ms: int):
        """
        Run the script in a child process.

        Returns:
            (result, error message, log lines, timed out)
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_timeout_ms / 1000
        ready = False

        parent_conn, child_conn = self._mp_context.Pipe(duplex=False)
        process = self._mp_context.Process(
            target=_run_script,
            args=(code, variables, child_conn),
            daemon=True,
        )
        process.start()
        child_conn.close()

        logs: List[str] = []
        result: Any = None
        error: Optional[str] = None
        finished = False
        timed_out = False

        try:
            while not finished:
                while parent_conn.poll():
                    try:
                        kind, payload = parent_conn.recv()
                    except EOFError:
                        error = "Code execution process exited without a result"
                        finished = True
                        break
                    if kind == "ready":
                        ready = True
                        deadline = loop.time() + timeout_ms / 1000
                    elif kind == "log":
                        logs.append(payload)
                    elif kind == "result":
                        result = payload
                        finished = True
                        break
                    elif kind == "error":
                        error = payload
                        finished = True
                        break

                if finished:
                    break
                if not process.is_alive() and not parent_conn.poll():
                    error = f"Code execution process exited with code {process.exitcode}"
                    break
                if loop.time() >= deadline:
                    if ready:
                        timed_out = True
                    else:
                        error = f"Code execution process did not start within {self.startup_timeout_ms}ms"
                    break
                await asyncio.sleep(POLL_INTERVAL)
        finally:
            if process.is_alive():
                process.kill()
            process.join(timeout=1)
            parent_conn.close()

        return result, error, logs, timed_out
