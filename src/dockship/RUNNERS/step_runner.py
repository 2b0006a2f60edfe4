# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Execution of run-command build steps with deadline enforcement.
"""
import logging
import os
import subprocess
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)

OUTPUT_TAIL_LINES = 20


class Deadline:
    """
    An absolute point in time shared by every stage of one pipeline run.
    """

    def __init__(self, seconds: Optional[float] = None):
        self.seconds = seconds
        self._expires_at = time.monotonic() + seconds if seconds is not None else None

    def remaining(self) -> Optional[float]:
        """Seconds left, or None when the run is unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0


@dataclass
class StepRunResult:
    """Outcome of a single executed command."""
    exit_code: Optional[int]
    output: str = ""
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.exit_code == 0

    def tail(self, lines: int = OUTPUT_TAIL_LINES) -> str:
        return "\n".join(self.output.splitlines()[-lines:])


class StepRunner:
    """
    Runs build commands as child processes.
    """

    def __init__(self, log_file: Optional[str] = None):
        """
        Args:
            log_file (Optional[str]): Path where command output is appended.
        """
        self.log_file = log_file

    def run(self,
            command: List[str],
            env: Dict[str, str],
            working_dir: str,
            timeout: Optional[float] = None) -> StepRunResult:
        """
        Runs a command to completion or until the timeout expires.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Dict[str, str]): Environment variables for the process.
            working_dir (str): Directory to start the process in.
            timeout (Optional[float]): Seconds before the process tree is killed.

        Returns:
            StepRunResult: Exit code and captured output.
        """
        os.makedirs(working_dir, exist_ok=True)
        logger.info("Running: %s", " ".join(command))

        # shell=False always; shell-form steps arrive already wrapped in /bin/sh -c.
        process = subprocess.Popen(
            command,
            env=env,
            cwd=working_dir,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            encoding="utf-8",
            errors="replace",
            shell=False,
        )
        try:
            output, _ = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.error("Command exceeded %.1fs, terminating: %s", timeout, " ".join(command))
            self._kill_tree(process.pid)
            output, _ = process.communicate()
            result = StepRunResult(exit_code=process.returncode, output=output or "", timed_out=True)
        else:
            result = StepRunResult(exit_code=process.returncode, output=output or "")

        self._append_log(command, result)
        return result

    @staticmethod
    def _kill_tree(pid: int, grace: float = 3.0) -> None:
        """Terminates a process and all of its descendants."""
        try:
            parent = psutil.Process(pid)
        except psutil.NoSuchProcess:
            return
        procs = parent.children(recursive=True) + [parent]
        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass
        _, alive = psutil.wait_procs(procs, timeout=grace)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

    def _append_log(self, command: List[str], result: StepRunResult) -> None:
        if not self.log_file:
            return
        log_dir = os.path.dirname(self.log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        with open(self.log_file, 'a', encoding='utf-8') as f:
            f.write(f"$ {' '.join(command)}\n")
            f.write(result.output)
            if result.timed_out:
                f.write("\n# TIMEOUT\n")
            f.write(f"# exit code: {result.exit_code}\n")
