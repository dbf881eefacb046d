from enum import Enum


class EventFormat(str, Enum):
    rotating = 'rotating'
    hosted = 'hosted'

    @classmethod
    def normalize(cls, value) -> 'EventFormat':
        if isinstance(value, cls):
            return value
        key = str(value or '').strip().lower()
        if key not in cls._value2member_map_:
            raise ValueError(f"format must be one of: {', '.join(cls._value2member_map_)}")
        return cls(key)


class MatchingStatus(str, Enum):
    open = 'open'
    matching = 'matching'
    closed = 'closed'


class CircleRole(str, Enum):
    # hosted format
    host = 'host'
    participant = 'participant'
    # rotating format, one course per unit
    starter = 'starter'
    main = 'main'
    dessert = 'dessert'


class CircleStatus(str, Enum):
    assigned = 'assigned'
    needs_host = 'needs_host'


class CoursePreference(str, Enum):
    starter = 'starter'
    main = 'main'
    dessert = 'dessert'

    @classmethod
    def normalize(cls, value):
        if value in (None, ''):
            return None
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        # registration forms of the older site used "appetizer"
        key = {'appetizer': 'starter'}.get(key, key)
        if key not in cls._value2member_map_:
            raise ValueError(f"course_preference must be one of: {', '.join(cls._value2member_map_)}")
        return cls(key)


def normalized_value(enum_cls, value, default=None):
    """String value of ``enum_cls.normalize(value)``; ``default`` when empty or unknown."""
    try:
        member = enum_cls.normalize(value)
    except ValueError:
        return default
    return member.value if member is not None else default
