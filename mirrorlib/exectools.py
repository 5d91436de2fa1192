"""
This module contains a set of functions for managing shell commands
consistently. It adds some logging and some additional capabilties to the
ordinary subprocess behaviors.
"""

import asyncio
import functools
import shlex
import subprocess
from typing import Dict, List, Optional, Tuple, Union

from mirrorlib import logutil

SUCCESS = 0

logger = logutil.getLogger(__name__)


async def cmd_gather_async(cmd: Union[str, List[str]], text_mode=True, cwd: Optional[str] = None, set_env: Optional[Dict[str, str]] = None,
                           strip=False, log_stdout=False, log_stderr=True,
                           timeout: Optional[float] = None) -> Union[Tuple[int, str, str], Tuple[int, bytes, bytes]]:
    """Runs a command asynchronously and returns rc,stdout,stderr as a tuple.

    :param cmd: The command and arguments to execute
    :param text_mode: True to decode stdout to string
    :param cwd: Set current working directory
    :param set_env: Dict of env vars to override in the current mirror environment.
    :param strip: Strip extra whitespace from stdout/err before returning. Requires text_mode = True.
    :param log_stdout: Whether stdout should be logged into the DEBUG log.
    :param log_stderr: Whether stderr should be logged into the DEBUG log
    :param timeout: Seconds after which the process is killed
    :return: (rc, stdout, stderr)
    """
    if strip and not text_mode:
        raise ValueError("Can't strip if text_mode is False.")

    if not isinstance(cmd, list):
        cmd_list = shlex.split(cmd)
    else:
        cmd_list = [str(c) for c in cmd]
    cmd_info = f"[cwd={cwd or '.'}]: {cmd_list}"

    logger.debug("Executing:cmd_gather %s", cmd_info)
    proc = await asyncio.create_subprocess_exec(
        *cmd_list,
        cwd=cwd,
        env=set_env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        stdin=subprocess.DEVNULL)

    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    rc = proc.returncode

    out_str = out.decode(encoding="utf-8") if text_mode else out.hex()
    err_str = err.decode(encoding="utf-8")

    log_output_stdout = out_str if log_stdout else f'{out_str[:200]}\n..truncated..'
    log_output_stderr = err_str if log_stderr else f'{err_str[:200]}\n..truncated..'

    if rc:
        logger.debug(
            "%s: Exited with error: %s\nstdout>>%s<<\nstderr>>%s<<\n",
            cmd_info, rc, log_output_stdout, log_output_stderr)
    else:
        logger.debug(
            "%s: Exited with: %s\nstdout>>%s<<\nstderr>>%s<<\n",
            cmd_info, rc, log_output_stdout, log_output_stderr)

    if text_mode:
        return (rc, out_str, err_str) if not strip else (rc, out_str.strip(), err_str.strip())
    else:
        return rc, out, err


async def cmd_assert_async(cmd: Union[str, List[str]], text_mode=True, retries=1, pollrate=60,
                           cwd: Optional[str] = None, set_env: Optional[Dict[str, str]] = None, strip=False,
                           log_stdout: bool = False, log_stderr: bool = True,
                           timeout: Optional[float] = None) -> Union[Tuple[str, str], Tuple[bytes, bytes]]:
    """
    Similar to cmd_gather_async, but raise an exception if the return code of the command indicates failure.

    :param cmd: A shell command
    :param text_mode: True to decode stdout to string
    :param retries: The number of times to try before declaring failure
    :param pollrate: How long to sleep between tries
    :param cwd: Set current working directory
    :param set_env: Dict of env vars to set for command (overriding existing)
    :param strip: Strip extra whitespace from stdout/err before returning.
    :param log_stdout: Whether stdout should be logged into the DEBUG log.
    :param log_stderr: Whether stderr should be logged into the DEBUG log
    :param timeout: Seconds after which a single try is killed
    :return: (stdout,stderr) if exit code is zero
    """
    if retries <= 0:
        raise ValueError("`retries` must be greater than 0.")
    cmd_list = [str(c) for c in cmd] if isinstance(cmd, list) else shlex.split(cmd)

    for try_num in range(0, retries):
        if try_num > 0:
            logger.debug(
                "cmd_assert: Failed %s times. Retrying in %s seconds: %s",
                try_num, pollrate, cmd_list)
            await asyncio.sleep(pollrate)
        result, out, err = await cmd_gather_async(cmd_list, text_mode=text_mode, cwd=cwd, set_env=set_env, strip=strip,
                                                  log_stdout=log_stdout, log_stderr=log_stderr, timeout=timeout)
        if result == SUCCESS:
            break

    logger.debug("cmd_assert: Final result = %s in %s tries.", result, try_num)
    if result != SUCCESS:
        raise ChildProcessError("Error running [{}] {}: {}".format(cwd or '.', cmd_list, err[-500:] if text_mode else ''))
    return out, err


def limit_concurrency(limit=5):
    """A decorator to limit the number of parallel tasks with asyncio.

    https://stackoverflow.com/a/66289885
    """
    # use asyncio.BoundedSemaphore(5) instead of Semaphore to prevent accidentally increasing the original limit (stackoverflow.com/a/48971158/6687477)
    sem = asyncio.BoundedSemaphore(limit)

    def executor(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            async with sem:
                return await func(*args, **kwargs)

        return wrapper

    return executor
