"""Brazilian taxpayer ids (CPF for people, CNPJ for companies)."""

import re
from typing import Tuple

from estate_billing.errors import ValidationError

CPF = "CPF"
CNPJ = "CNPJ"

_CNPJ_WEIGHTS_1 = (5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
_CNPJ_WEIGHTS_2 = (6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)


def clean(value: str) -> str:
    return re.sub(r"\D", "", value or "")


def _cpf_is_valid(digits: str) -> bool:
    numbers = [int(d) for d in digits]
    for position in (9, 10):
        total = sum(n * (position + 1 - i) for i, n in enumerate(numbers[:position]))
        check = (total * 10) % 11 % 10
        if check != numbers[position]:
            return False
    return True


def _cnpj_is_valid(digits: str) -> bool:
    numbers = [int(d) for d in digits]
    for position, weights in ((12, _CNPJ_WEIGHTS_1), (13, _CNPJ_WEIGHTS_2)):
        remainder = sum(n * w for n, w in zip(numbers[:position], weights)) % 11
        check = 0 if remainder < 2 else 11 - remainder
        if check != numbers[position]:
            return False
    return True


def classify(value: str) -> Tuple[str, str]:
    """
    Clean and validate a CPF/CNPJ.

    Returns ``(kind, digits)`` where kind is ``"CPF"`` for 11 digits and
    ``"CNPJ"`` for 14. Raises ValidationError on any other length, on a
    repeated-digit sequence or on a check-digit mismatch.
    """
    digits = clean(value)

    if len(digits) == 11:
        kind, valid = CPF, _cpf_is_valid
    elif len(digits) == 14:
        kind, valid = CNPJ, _cnpj_is_valid
    else:
        raise ValidationError(
            "Tax id must have 11 (CPF) or 14 (CNPJ) digits",
            details={"field": "tax_id", "length": len(digits)},
        )

    if len(set(digits)) == 1 or not valid(digits):
        raise ValidationError(
            f"Invalid {kind} check digits",
            details={"field": "tax_id", "type": kind},
        )

    return kind, digits
