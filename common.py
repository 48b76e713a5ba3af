import os
import shutil
import subprocess

from pyinfra import host, logger
from pyinfra.facts.server import LsbRelease

from errors import DeployError


# --- ANSI Color Codes for Better Output ---
class colors:
    GREEN = "\033[92m"
    RED = "\033[91m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    ENDC = "\033[0m"


def print_color(color, message):
    """Prints a message in a given color."""
    print(f"{color}{message}{colors.ENDC}")


def check_server() -> None:
    logger.info(f"Starting Common Prerequisite Checks on {host.name}")
    lsb_info = host.get_fact(LsbRelease)
    is_apt_based = lsb_info["id"].lower() in ["ubuntu", "debian"]
    assert is_apt_based, (
        f"Unsupported OS: {lsb_info['id']}. This script is designed for Debian/Ubuntu."
    )


def log_callback(result):
    logger.info("-" * 60)
    if result.stdout:
        logger.info(result.stdout)
    if result.stderr:
        logger.info("stderr:")
        logger.info(result.stderr)
    logger.info("-" * 60)


def run_command(
    command,
    check=True,
    command_input=None,
    env=None,
    capture_output=False,
    cwd=None,
    error=DeployError,
):
    """Run a local command, raising ``error`` with its stderr when it fails."""
    display_command = " ".join(str(part) for part in command)
    if command_input:
        display_command += " <<< [INPUT]"
    print_color(colors.BLUE, f"--> Executing: {display_command}")
    process_env = os.environ.copy()
    if env:
        process_env.update(env)
    try:
        result = subprocess.run(
            command,
            input=command_input,
            check=False,
            text=True,
            env=process_env,
            capture_output=capture_output,
            cwd=cwd,
        )
    except FileNotFoundError as e:
        raise error(f"Command '{command[0]}' not found. Is it in your PATH?") from e
    if check and result.returncode != 0:
        raise error(
            f"Command failed with return code {result.returncode}: {display_command}",
            output=result.stderr if capture_output else None,
        )
    return result


def command_exists(command):
    """Checks if a command is available in the system's PATH."""
    return shutil.which(command) is not None
