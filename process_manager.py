"""
Script Process Manager for askfile
- Launch the generated scratch script as a detached child process
- Capture stdout/stderr into a run log
- Report the outcome through a callback once the child exits
"""

import asyncio
import sys
from datetime import datetime
from pathlib import Path
from asyncio.subprocess import PIPE
from typing import Awaitable, Callable, Dict, List, Optional, Union

from rich.console import Console
from rich.markup import escape

console = Console()

ExitCallback = Callable[[Dict], Union[None, Awaitable[None]]]

_REGISTRY: Dict[int, Dict] = {}


def _write_log(log_file: Path, info: Dict) -> None:
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(log_file, "w", encoding="utf-8", errors="ignore") as f:
            f.write(f"$ {sys.executable} {info['script']}\n")
            f.write(f"started_at={info['started_at']} ended_at={info['ended_at']} exit_code={info['exit_code']}\n\n")
            if info["stdout"]:
                f.write("--- stdout ---\n")
                f.write(info["stdout"])
                f.write("\n")
            if info["stderr"]:
                f.write("--- stderr ---\n")
                f.write(info["stderr"])
                f.write("\n")
    except OSError as e:
        console.print(f"[yellow]Could not write script log {escape(str(log_file))}: {escape(str(e))}[/yellow]")


def _snapshot(info: Dict) -> Dict:
    return {k: v for k, v in info.items() if k not in ("proc", "task")}


async def _watch(info: Dict, on_exit: Optional[ExitCallback]) -> None:
    """Wait for the child, record its output and hand the record to on_exit."""
    proc = info["proc"]
    try:
        stdout, stderr = await proc.communicate()
        info["stdout"] = stdout.decode(errors="ignore")
        info["stderr"] = stderr.decode(errors="ignore")
        info["exit_code"] = proc.returncode
        info["status"] = "exited" if proc.returncode == 0 else "failed"
        if proc.returncode != 0:
            info["error"] = f"Command failed with exit code {proc.returncode}"
    except asyncio.CancelledError:
        info["status"] = "cancelled"
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        raise
    except Exception as e:
        info["status"] = "failed"
        info["error"] = str(e)
    finally:
        info["ended_at"] = datetime.now().isoformat()
        _write_log(Path(info["log_path"]), info)

    if on_exit is None:
        return
    try:
        outcome = on_exit(_snapshot(info))
        if asyncio.iscoroutine(outcome):
            await outcome
    except Exception as e:
        console.print(f"[red]Script callback failed: {escape(str(e))}[/red]")


async def start_script(script_path: str, cwd: Optional[str] = None, on_exit: Optional[ExitCallback] = None) -> Dict:
    """
    Start a script with the current interpreter without waiting for it.

    The watcher task is held in the module registry; callers that need the
    outcome pass on_exit or await wait_for_scripts().
    """
    workdir = Path(cwd).resolve() if cwd else Path.cwd().resolve()
    started_at = datetime.now()
    log_file = workdir / ".logs" / f"script-{started_at.strftime('%Y%m%d-%H%M%S-%f')}.log"
    result = {
        "success": False,
        "pid": None,
        "script": script_path,
        "cwd": str(workdir),
        "log_path": str(log_file),
        "error": None,
        "started_at": started_at.isoformat(),
    }

    if not workdir.is_dir():
        result["error"] = f"Invalid cwd: {workdir}"
        return result

    try:
        proc = await asyncio.create_subprocess_exec(
            sys.executable,
            script_path,
            cwd=str(workdir),
            stdout=PIPE,
            stderr=PIPE,
        )
    except OSError as e:
        result["error"] = str(e)
        return result

    info = {
        **result,
        "success": True,
        "pid": proc.pid,
        "proc": proc,
        "ended_at": None,
        "exit_code": None,
        "status": "running",
        "stdout": "",
        "stderr": "",
    }
    info["task"] = asyncio.create_task(_watch(info, on_exit))
    _REGISTRY[proc.pid] = info

    result.update({"success": True, "pid": proc.pid})
    return result


def list_scripts() -> List[Dict]:
    return [_snapshot(info) for info in _REGISTRY.values()]


async def wait_for_scripts(timeout: Optional[float] = None) -> List[Dict]:
    """Block until every launched script has been collected, then return their records."""
    tasks = [info["task"] for info in _REGISTRY.values() if not info["task"].done()]
    if tasks:
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    return list_scripts()


def clear_registry() -> None:
    """Forget finished runs."""
    for pid in [pid for pid, info in _REGISTRY.items() if info["task"].done()]:
        del _REGISTRY[pid]
