"""Family access codes

- parent: P-XXXXXXXX
- child (student): E-XXXXXXXX
"""
import re
import secrets
from typing import Iterable, Literal, Optional

from family_portal.core.errors import GenerationExhausted

CodeType = Literal["parent", "child"]

CODE_PREFIXES = {
    "parent": "P",
    "child": "E",
}
CODE_DIGITS = 8
CODE_PATTERN = re.compile(r"^[PE]-\d{8}$")


def _random_digits(length: int = CODE_DIGITS) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def generate_family_code(code_type: CodeType) -> str:
    return f"{CODE_PREFIXES[code_type]}-{_random_digits()}"


def is_valid_family_code(code: str) -> bool:
    return bool(code) and CODE_PATTERN.match(code) is not None


def get_code_type(code: str) -> Optional[CodeType]:
    if not is_valid_family_code(code):
        return None
    return "parent" if code[0] == "P" else "child"


def generate_unique_codes(
    code_type: CodeType,
    count: int,
    existing_codes: Iterable[str] = (),
) -> list[str]:
    """Generate `count` codes absent from `existing_codes` and from each other.

    Gives up after count * 10 draws and raises GenerationExhausted; callers
    retry the whole request with fresh attempts.
    """
    existing = set(existing_codes)
    codes: list[str] = []
    max_attempts = count * 10

    attempts = 0
    while len(codes) < count and attempts < max_attempts:
        code = generate_family_code(code_type)
        if code not in existing and code not in codes:
            codes.append(code)
        attempts += 1

    if len(codes) < count:
        raise GenerationExhausted(
            f"Solo se generaron {len(codes)} de {count} códigos tras {attempts} intentos"
        )
    return codes
