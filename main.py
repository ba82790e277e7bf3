#!/usr/bin/env python3
"""
askfile - ask a language model about a file or directory
Sends the file contents and a question to a chat-completion endpoint,
shows the answer and offers to run the returned Python script.
"""

import os
import sys
import json
import re
import time
import asyncio
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

import httpx
from rich.console import Console
from rich.panel import Panel
from rich.markdown import Markdown
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn

from config import AppConfig, CompletionOptions, get_config, validate_config, API_KEY_ENV, SCRATCH_FILE
from commands import collect_content, derive_identifier, write_script
from process_manager import start_script, list_scripts, wait_for_scripts

if os.name == "nt":
    import msvcrt
    termios = tty = None
else:
    import termios
    import tty
    msvcrt = None

# Console setup
console = Console()

USAGE = (
    "Please ask a question about a file or directory. "
    "Format: askfile <question-required> <file-or-directory-required> [max_output_tokens]"
)

SYSTEM_PROMPT = (
    "You are an AI assistant that specializes in working with file data, specifically code files. "
    "You can provide code suggestions, detect errors, and answer questions related to the code."
)

SCRIPT_INSTRUCTION = (
    "Please provide a Python script that makes the changes requested. "
    "It should be a stand-alone script that I can run directly to apply the suggested changes."
)


class CompletionError(Exception):
    """The chat-completion call failed; payload holds the API's error body, if any."""

    def __init__(self, message: str, payload=None):
        super().__init__(message)
        self.payload = payload


class SessionLockError(Exception):
    """Another invocation holds the session lock."""


class ConversationStore:
    """Persists one JSON transcript per session identifier"""

    def __init__(self, conversations_dir: str = "conversations", lock_timeout: float = 10.0):
        self.conversations_dir = Path(conversations_dir)
        self.lock_timeout = lock_timeout

    def _validate_identifier(self, identifier: str) -> bool:
        """Reject anything that could escape the conversations directory"""
        return bool(re.match(r'^[A-Za-z0-9_-]+$', identifier or ""))

    def _conversation_path(self, identifier: str) -> Path:
        return self.conversations_dir / f"{identifier}.json"

    def _lock_path(self, identifier: str) -> Path:
        return self.conversations_dir / f"{identifier}.lock"

    @contextmanager
    def lock(self, identifier: str, timeout: Optional[float] = None, poll_interval: float = 0.1) -> Iterator[Path]:
        """
        Hold an exclusive lock on one session from load until save.

        The lock is a file created with O_EXCL; it is removed on exit even
        when the body raises.

        Raises:
            SessionLockError: if the lock is still held after timeout seconds
                (lock_timeout when not given)
        """
        if not self._validate_identifier(identifier):
            raise ValueError(f"Invalid session identifier: {identifier}")
        self.conversations_dir.mkdir(parents=True, exist_ok=True)
        lock_file = self._lock_path(identifier)
        deadline = time.monotonic() + (self.lock_timeout if timeout is None else timeout)

        while True:
            try:
                fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                break
            except FileExistsError:
                if time.monotonic() >= deadline:
                    raise SessionLockError(
                        f"Session '{identifier}' is in use by another process ({lock_file})"
                    )
                time.sleep(poll_interval)

        try:
            os.write(fd, str(os.getpid()).encode("ascii"))
            os.close(fd)
            yield lock_file
        finally:
            try:
                lock_file.unlink()
            except FileNotFoundError:
                pass

    def load_conversation(self, identifier: str) -> Optional[List[Dict]]:
        """Load a saved transcript, or None if this session has none yet"""
        if not self._validate_identifier(identifier):
            return None
        conversation_file = self._conversation_path(identifier)
        if conversation_file.exists():
            with open(conversation_file, 'r', encoding='utf-8') as f:
                return json.load(f)
        return None

    def save_conversation(self, identifier: str, messages: List[Dict]) -> Path:
        """Overwrite the transcript for this session"""
        if not self._validate_identifier(identifier):
            raise ValueError(f"Invalid session identifier: {identifier}")
        self.conversations_dir.mkdir(parents=True, exist_ok=True)
        conversation_file = self._conversation_path(identifier)
        tmp_file = conversation_file.with_suffix(".json.tmp")
        with open(tmp_file, 'w', encoding='utf-8') as f:
            json.dump(messages, f, indent=2)
        os.replace(tmp_file, conversation_file)
        return conversation_file

    def list_sessions(self) -> List[Dict]:
        """List saved sessions with their message counts"""
        sessions = []
        for conversation_file in sorted(self.conversations_dir.glob("*.json")):
            try:
                with open(conversation_file, 'r', encoding='utf-8') as f:
                    messages = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                console.print(f"[yellow]Skipping unreadable session {escape(conversation_file.name)}: {escape(str(e))}[/yellow]")
                continue
            sessions.append({
                "id": conversation_file.stem,
                "messages": len(messages) if isinstance(messages, list) else 0,
            })
        return sessions


def build_user_message(question: str, file_contents: str) -> Dict:
    return {
        "role": "user",
        "content": f"QUESTION: {question}\n{file_contents}\n{SCRIPT_INSTRUCTION}",
    }


def build_messages(question: str, file_contents: str, previous: Optional[List[Dict]] = None) -> List[Dict]:
    """
    Messages to send this turn.

    A new session starts with the system prompt; an existing one gets the
    new user message appended to a copy of its transcript. An empty saved
    transcript counts as new so the first message is always the system one.
    """
    user_message = build_user_message(question, file_contents)
    if previous:
        return list(previous) + [user_message]
    return [{"role": "system", "content": SYSTEM_PROMPT}, user_message]


class ResponseParser:
    """Pulls runnable code out of model answers"""

    # The info string only counts as a tag when a newline ends it; ```x``` on one line is untagged
    FENCE_RE = re.compile(r"```(?:[ \t]*([\w+.-]*)[^\n`]*\n)?([\s\S]*?)```")
    CODE_TAGS = {"", "py", "python", "python3"}

    @staticmethod
    def extract_code(answer: str) -> str:
        """Join untagged and Python-tagged fenced blocks in order of appearance."""
        blocks = []
        for match in ResponseParser.FENCE_RE.finditer(answer or ""):
            if (match.group(1) or "").lower() in ResponseParser.CODE_TAGS:
                blocks.append(match.group(2).strip())
        return "\n".join(blocks).strip()


def _error_payload(response: Optional[httpx.Response]):
    if response is None:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text or None


class CompletionClient:
    """Handles communication with the chat-completion API"""

    def __init__(self, config: AppConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport

    async def create_chat_completion(self, messages: List[Dict], options: Optional[CompletionOptions] = None) -> str:
        """
        Send the conversation and return the first choice's text.

        Raises:
            CompletionError: on transport errors, non-success statuses and
                malformed responses, after reporting them on the console
        """
        options = options or CompletionOptions()
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.config.model,
            "messages": messages,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }

        try:
            # No timeout: the request runs until the API answers or fails
            async with httpx.AsyncClient(timeout=None, transport=self._transport) as client:
                response = await client.post(
                    self.config.api_endpoint,
                    headers=headers,
                    json=payload
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            error_payload = _error_payload(e.response)
            console.print(f"[red]Error creating chat completion: {escape(str(e))}[/red]")
            if error_payload:
                console.print(error_payload, markup=False)
            raise CompletionError(str(e), payload=error_payload) from e
        except httpx.HTTPError as e:
            console.print(f"[red]Error creating chat completion: {escape(str(e))}[/red]")
            raise CompletionError(str(e)) from e
        except ValueError as e:
            console.print(f"[red]Chat completion returned invalid JSON: {escape(str(e))}[/red]")
            raise CompletionError(str(e)) from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            console.print(f"[red]Unexpected chat completion response: {escape(str(e))}[/red]")
            console.print(data, markup=False)
            raise CompletionError("Response has no choices[0].message.content", payload=data) from e
        if not isinstance(content, str):
            console.print("[red]Chat completion returned no text.[/red]")
            raise CompletionError("Response content is not text", payload=data)
        return content


def read_key() -> str:
    """Block until one key is pressed and return it."""
    if not sys.stdin.isatty():
        return sys.stdin.read(1)
    if msvcrt is not None:
        return msvcrt.getwch()
    fd = sys.stdin.fileno()
    old_settings = termios.tcgetattr(fd)
    try:
        tty.setraw(fd)
        return sys.stdin.read(1)
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)


def report_script_result(record: Dict) -> None:
    """Exit callback for the scratch script."""
    if record.get("error"):
        console.print(f"[red]Error executing the script: {escape(str(record['error']))}[/red]")
        if record.get("stderr"):
            console.print(Panel(escape(record["stderr"].rstrip()), title="[red]stderr[/red]", border_style="red"))
        return
    console.print(f"Script output: {record.get('stdout', '')}", markup=False)


class GateState(Enum):
    AWAITING_KEY = "awaiting_key"
    TERMINATED = "terminated"


class ApplyGate:
    """
    One-keypress confirmation before the extracted code is run.

    AWAITING_KEY -> TERMINATED on any key. Space writes the code to the
    scratch file and launches it detached; its outcome is printed by
    report_script_result whenever the child exits.
    """

    ACCEPT_KEY = " "

    def __init__(self, code: str, scratch_file: str = SCRATCH_FILE,
                 key_reader: Optional[Callable[[], str]] = None, launcher=None):
        self.code = code
        self.scratch_file = scratch_file
        self.state = GateState.AWAITING_KEY
        self.launch_result: Optional[Dict] = None
        self._read_key = key_reader or read_key
        self._launcher = launcher or start_script

    async def run(self) -> bool:
        """Prompt, read one key and act on it. Returns True if the code was accepted."""
        if self.state is not GateState.AWAITING_KEY:
            raise RuntimeError("Apply gate has already terminated")

        console.print("[#C8A882]Press SPACE to apply changes, or any other key to exit.[/#C8A882]")
        try:
            accepted = self._read_key() == self.ACCEPT_KEY
            if accepted:
                await self._apply()
        finally:
            self.state = GateState.TERMINATED
        return accepted

    async def _apply(self) -> None:
        written = write_script(self.scratch_file, self.code)
        if not written["success"]:
            console.print(f"[red]Could not write {escape(self.scratch_file)}: {escape(str(written['error']))}[/red]")
            return
        # Detached: the watcher reports through the callback, nothing awaits the child here
        self.launch_result = await self._launcher(self.scratch_file, on_exit=report_script_result)
        if not self.launch_result.get("success"):
            console.print(f"[red]Error executing the script: {escape(str(self.launch_result.get('error')))}[/red]")
        else:
            console.print(f"[dim]Running {escape(self.scratch_file)} (pid {self.launch_result.get('pid')})[/dim]")


def parse_args(argv: List[str]):
    """Return (question, path, options), or None when the arguments are unusable."""
    if len(argv) < 2 or not argv[0] or not argv[1]:
        return None
    options = CompletionOptions()
    if len(argv) > 2 and argv[2]:
        try:
            options.max_tokens = int(argv[2])
        except ValueError:
            return None
        if options.max_tokens <= 0:
            return None
    return argv[0], argv[1], options


async def run(argv: List[str], config: Optional[AppConfig] = None,
              client: Optional[CompletionClient] = None,
              store: Optional[ConversationStore] = None,
              key_reader: Optional[Callable[[], str]] = None,
              launcher=None) -> int:
    """Run one question/answer/apply round. Returns the process exit code."""
    parsed = parse_args(argv)
    if parsed is None:
        console.print(USAGE, markup=False)
        return 1
    question, file_or_dir, options = parsed

    config = config or get_config()
    if not validate_config(config):
        console.print(f"[red]Missing API key. Set {API_KEY_ENV} in the environment or a .env file.[/red]")
        return 1
    client = client or CompletionClient(config)
    store = store or ConversationStore(config.conversations_dir)

    identifier = derive_identifier(file_or_dir)
    try:
        with store.lock(identifier):
            previous = store.load_conversation(identifier)
            file_contents = collect_content(file_or_dir)
            messages = build_messages(question, file_contents, previous)

            console.print(question, markup=False)
            console.print(f"[dim]Sending request to {escape(config.model)}...[/dim]")
            with Progress(
                SpinnerColumn(spinner_name="line", style="#C8A882"),
                TextColumn("[#C8A882]Waiting for response...[/#C8A882]"),
                console=console,
                transient=True
            ) as progress:
                progress.add_task(description="", total=None)
                answer = await client.create_chat_completion(messages, options)

            returned_code = ResponseParser.extract_code(answer)
            console.print(Panel(Markdown(answer), title="[bold #C8A882]Answer[/bold #C8A882]", border_style="#C8A882"))

            gate = ApplyGate(returned_code, config.scratch_file, key_reader=key_reader, launcher=launcher)
            await gate.run()

            store.save_conversation(identifier, messages + [{"role": "assistant", "content": answer}])
    except CompletionError:
        console.print("[red]No response received from the API. Nothing was applied.[/red]")
        return 2
    except SessionLockError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        return 1

    return 0


async def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point"""
    exit_code = await run(sys.argv[1:] if argv is None else argv)

    # Detached scripts are only collected here so their output is not lost at loop shutdown
    if any(s.get("status") == "running" for s in list_scripts()):
        await wait_for_scripts()
    return exit_code


def cli() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user. Goodbye![/yellow]")
        sys.exit(0)


if __name__ == "__main__":
    cli()
