"""
Unit Tests for PII redaction in logs and Sentry events

Run with: pytest tests/test_logging_config.py -v
"""

import json
import logging

from logging_config import JSONFormatter, PIIRedactionFilter, RequestContextFilter, redact_pii
from sentry_integration import redact_dict


def make_record(msg, *args, **extra):
    record = logging.LogRecord("identity.linker", logging.INFO, __file__, 1, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestRedactPII:

    def test_email_masked(self):
        assert redact_pii("login for foo@bar.com failed") == "login for f***@bar.com failed"

    def test_phone_masked(self):
        assert redact_pii("phone +60123456789 taken") == "phone ***6789 taken"

    def test_ids_untouched(self):
        assert redact_pii("merged account abc into CBXHKW") == "merged account abc into CBXHKW"


class TestFilters:

    def test_redaction_filter_rewrites_message(self):
        record = make_record("binding %s", "foo@bar.com")

        assert PIIRedactionFilter().filter(record) is True
        assert record.getMessage() == "binding f***@bar.com"

    def test_request_context_filter(self):
        context = RequestContextFilter()
        context.set_request_context("req-1", "club-app")
        record = make_record("hello")

        context.filter(record)

        assert record.request_id == "req-1"
        assert record.caller_service == "club-app"

    def test_json_formatter(self):
        record = make_record("merge completed", job_id="job-1")

        data = json.loads(JSONFormatter(service_name="club-identity-core").format(record))

        assert data["message"] == "merge completed"
        assert data["service"] == "club-identity-core"
        assert data["extra"]["job_id"] == "job-1"


class TestSentryRedaction:

    def test_nested_sensitive_keys(self):
        event = {
            "headers": {"Authorization": "Bearer x", "X-Service-Name": "club-app"},
            "body": {"email": "foo@bar.com", "claims": [{"phone": "+60123456789"}]},
        }

        redacted = redact_dict(event)

        assert redacted["headers"]["Authorization"] == "[REDACTED]"
        assert redacted["headers"]["X-Service-Name"] == "club-app"
        assert redacted["body"]["email"] == "[REDACTED]"
        assert redacted["body"]["claims"] == [{"phone": "[REDACTED]"}]
