# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Shell command runner for lifecycle hooks and build scripts.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Union

from criage.core.errors import HookExecutionError

logger = logging.getLogger(__name__)


class CommandRunner:
    """Runs shell commands and reports their exit status"""

    def __init__(self, shell: str = "sh", timeout: Optional[float] = None):
        self.shell = shell
        self.timeout = timeout

    def run(
        self,
        command: str,
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[Dict[str, str]] = None
    ) -> int:
        """
        Run one command through the shell.

        Args:
            command: Shell command line
            cwd: Working directory
            env: Variables merged over the inherited environment

        Returns:
            Exit status

        Raises:
            HookExecutionError: If the command exits non-zero or times out
        """
        merged_env = dict(os.environ)
        if env:
            merged_env.update(env)

        logger.debug(f"Running: {command} (cwd={cwd})")
        try:
            result = subprocess.run(
                [self.shell, "-c", command],
                cwd=str(cwd) if cwd else None,
                env=merged_env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise HookExecutionError(command, -1, details={"reason": f"timed out after {self.timeout}s"})

        if result.stdout:
            logger.debug(result.stdout.rstrip())
        if result.returncode != 0:
            raise HookExecutionError(
                command,
                result.returncode,
                details={"stderr": (result.stderr or "").strip()[-2000:]}
            )
        return result.returncode

    def run_all(
        self,
        commands: List[str],
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[Dict[str, str]] = None
    ) -> None:
        """Run commands in order, stopping at the first failure."""
        for command in commands:
            self.run(command, cwd=cwd, env=env)
