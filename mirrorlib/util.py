import re
from typing import Dict, Iterable, List

import click

from mirrorlib import constants


def stringify(val):
    """
    Accepts either str or bytes and returns a str
    """
    try:
        val = val.decode('utf-8')
    except (UnicodeDecodeError, AttributeError):
        pass
    return val


def red_print(msg, file=None):
    """Print out a message in red text"""
    click.secho(stringify(msg), nl=True, bold=False, fg='red', file=file)


def green_print(msg, file=None):
    """Print out a message in green text"""
    click.secho(stringify(msg), nl=True, bold=False, fg='green', file=file)


def yellow_print(msg, file=None):
    """Print out a message in yellow text"""
    click.secho(stringify(msg), nl=True, bold=False, fg='yellow', file=file)


# some upstreams and runners use the kernel's architecture nomenclature; translate it to the OCI one
kernel_arches = ["x86_64", "aarch64"]
oci_arches = ["amd64", "arm64"]


def oci_arch(arch: str) -> str:
    arch = arch.strip().lower()
    if arch in oci_arches:
        return arch  # already an OCI arch, keep same
    if arch in kernel_arches:
        return oci_arches[kernel_arches.index(arch)]
    raise ValueError(f"no such arch '{arch}' - expected one of {', '.join(constants.KNOWN_ARCHES)}")


def platform_for_arch(arch: str) -> str:
    return f"linux/{oci_arch(arch)}"


def arch_for_platform(platform: str) -> str:
    """'linux/arm64' -> 'arm64'; variants such as 'linux/arm64/v8' are folded onto the arch"""
    parts = platform.split('/')
    if len(parts) < 2 or parts[0] != 'linux':
        raise ValueError(f"Unsupported platform '{platform}'")
    return oci_arch(parts[1])


def split_comma_list(values: Iterable[str]) -> List[str]:
    """ ('amd64,arm64', 'ppc64le') -> ['amd64', 'arm64', 'ppc64le'] """
    result = []
    for value in values:
        result.extend(v.strip() for v in value.split(',') if v.strip())
    return result


TEMPLATE_VAR = re.compile(r"\$\{(\w+)\}")


def substitute_vars(template: str, variables: Dict[str, str]) -> str:
    """
    Replaces ${NAME} placeholders (the notation used in CI build matrices) with values from variables.
    Unknown placeholders are left untouched.
    """
    return TEMPLATE_VAR.sub(lambda m: variables.get(m.group(1), m.group(0)), template)
