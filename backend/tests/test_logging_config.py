import logging

from dinnercircles.logging_config import JsonFormatter, KeyValueFormatter, PiiMaskFilter


def _record(msg, *args, **extra):
    record = logging.LogRecord('matching', logging.INFO, __file__, 1, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_emails_are_masked_in_message_and_args():
    record = _record('optin partner=%s', 'bob.builder@example.com')
    PiiMaskFilter().filter(record)
    assert record.getMessage() == 'optin partner=bob***@example.com'


def test_key_value_formatter_appends_request_context():
    record = _record('matching.trigger.closed circles=%d', 2, request_id='r-1', event_id='e-9')
    line = KeyValueFormatter('%(message)s').format(record)
    assert ' INFO matching matching.trigger.closed circles=2 ' in line
    assert line.endswith('request_id=r-1 event_id=e-9')
    assert line.split(' ')[0].endswith('+00:00')


def test_json_formatter_includes_scalar_extras():
    import json

    record = _record('hello', request_id='r-2')
    payload = json.loads(JsonFormatter().format(record))
    assert payload['message'] == 'hello'
    assert payload['logger'] == 'matching'
    assert payload['request_id'] == 'r-2'
