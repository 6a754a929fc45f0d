"""
Clean-up rules for call numbers stored in holdings 852 $h and $i.
"""

import re

NUMBER_THEN_LETTER = re.compile(r'([0-9])([a-zA-Z])')
NUMBER_PERIOD_LETTER = re.compile(r'([0-9])\.([a-zA-Z])')
SPACE_THEN_PERIODS = re.compile(r' \.\.+')
PERIOD_SPACES_NUMBER = re.compile(r'\. +([0-9])')

RULES: tuple[str, ...] = (
    'Add a space between a number then a letter.',
    'Add a space between a number and a period when the period is followed by a letter.',
    'Remove the extra periods from any substring matching space period period...',
    'Remove any spaces between a period and a number.',
    'Remove any leading or trailing whitespace.',
)


def clean_call_number(call_number: str) -> str:
    """
    Returns the cleaned call number, like:
      'BR115.C5L43'      -> 'BR115 .C5 L43'
      'BS410.V452 V. 31' -> 'BS410 .V452 V.31'
    """
    call_number = NUMBER_THEN_LETTER.sub(r'\1 \2', call_number)
    call_number = NUMBER_PERIOD_LETTER.sub(r'\1 .\2', call_number)
    call_number = SPACE_THEN_PERIODS.sub(' .', call_number)
    call_number = PERIOD_SPACES_NUMBER.sub(r'.\1', call_number)
    return call_number.strip()
