"""
Validadores y normalizadores para la terminal POS
"""
import re
from typing import Optional


PIN_LENGTH = 6

DISCOUNT_CODE_PATTERN = re.compile(r'^[A-Z0-9][A-Z0-9_\-]{1,39}$')


def validate_pin(pin: str) -> bool:
    """
    Valida el formato del PIN de autorización.
    - Exactamente 6 dígitos
    - Solo números (sin espacios ni separadores)
    """
    if pin is None:
        return False
    return len(pin) == PIN_LENGTH and pin.isdigit()


def normalize_discount_code(code: str) -> Optional[str]:
    """
    Normaliza un código de descuento para comparación sin distinguir mayúsculas.
    Retorna None si el código está mal formado:
    - Vacío o solo espacios
    - Caracteres fuera de A-Z, 0-9, guion y guion bajo
    - Más de 40 caracteres
    """
    if code is None:
        return None

    cleaned = code.strip().upper()
    if not DISCOUNT_CODE_PATTERN.match(cleaned):
        return None

    return cleaned


def normalize_size(size: Optional[str]) -> Optional[str]:
    """
    Normaliza la talla seleccionada.
    Cadenas vacías equivalen a "sin talla".
    """
    if size is None:
        return None

    cleaned = size.strip()
    return cleaned or None
