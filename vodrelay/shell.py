import shlex
from typing import Iterable, Union

Arg = Union[str, int, float]


def quote_command(args: Iterable[Arg]) -> str:
    """Join argv into one remote command line, quoting every argument."""
    return " ".join(shlex.quote(str(a)) for a in args)


def pipeline(*commands: str) -> str:
    return " | ".join(c for c in commands if c)
