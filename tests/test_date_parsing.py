from datetime import datetime

import pytest

from companion_memory.services.date_parsing import parse_relative_date

# Wednesday, June 11 2025 at noon
REFERENCE = datetime(2025, 6, 11, 12, 0, 0)

CASES = [
    ('Dentist appointment tomorrow', datetime(2025, 6, 12, 12, 0)),
    ('Presentation today', datetime(2025, 6, 11, 23, 59, 59, 999999)),
    ('Going hiking this weekend', datetime(2025, 6, 14, 12, 0)),
    ('Job interview on Friday', datetime(2025, 6, 13, 12, 0)),
    ('Monday planning meeting', datetime(2025, 6, 16, 12, 0)),
    ('Standup moved to Wednesday', datetime(2025, 6, 18, 12, 0)),
    ('Sister wedding on July 4', datetime(2025, 7, 4, 12, 0)),
    ('Trip to Lisbon on Sept. 3', datetime(2025, 9, 3, 12, 0)),
    ('Conference Jan 15', datetime(2026, 1, 15, 12, 0)),
    ('Birthday party June 11', datetime(2025, 6, 11, 12, 0)),
    ('Final exam 6/20', datetime(2025, 6, 20, 12, 0)),
    ('Tax deadline 3-1', datetime(2026, 3, 1, 12, 0)),
    ('Flight tomorrow, back on Friday', datetime(2025, 6, 12, 12, 0)),
    ('Launch on Feb 30', None),
    ('Reading list item 13/45', None),
    ('Went to Tomorrowland festival', None),
    ('Learning to juggle', None),
    ('', None),
]


@pytest.mark.parametrize('text,expected', CASES)
def test_parse_relative_date(text, expected):
    assert parse_relative_date(text, REFERENCE) == expected


def test_weekday_counts_from_reference_day():
    sunday = datetime(2025, 6, 15, 9, 30)

    assert parse_relative_date('Hiking this weekend', sunday) == datetime(2025, 6, 21, 12, 0)
    assert parse_relative_date('Call on Monday', sunday) == datetime(2025, 6, 16, 12, 0)
