# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Tests for the admin audit log (app.audit.logger)."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from app.audit.logger import AuditAction, AuditEntityType, AuditLogger, get_audit_logger
from app.auth.identity import Identity


ADMIN = Identity(id="u-1", email="admin@brdg.app", display_name="Ada Admin", is_admin=True)
OTHER_ADMIN = Identity(id="u-2", email="ops@brdg.app", display_name="Ops", is_admin=True)


class BrokenSession:
    """Session stand-in whose commit always fails."""

    def add(self, obj):
        pass

    def commit(self):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    def rollback(self):
        pass

    def close(self):
        pass


def _append(logger: AuditLogger, admin=ADMIN, action=AuditAction.PARTNER_UPDATE, entity=AuditEntityType.PARTNER):
    return logger.append(
        admin=admin,
        action=action,
        entity_type=entity,
        entity_id="p-1",
        summary=f"{action.value} test",
        details={"k": "v"},
    )


class TestAppend:

    def test_entry_stored(self):
        stored = _append(get_audit_logger())
        assert stored["adminEmail"] == "admin@brdg.app"
        assert stored["adminName"] == "Ada Admin"
        assert stored["action"] == "partner.update"
        assert stored["entityType"] == "partner"
        assert stored["details"] == {"k": "v"}
        assert stored["createdAt"]

    def test_string_action_accepted(self):
        stored = get_audit_logger().append(
            admin=ADMIN, action="whitelist.sync", entity_type="whitelist", summary="sync",
        )
        assert stored["action"] == "whitelist.sync"
        assert stored["details"] == {}

    def test_unknown_action_rejected(self):
        with pytest.raises(ValueError):
            get_audit_logger().append(admin=ADMIN, action="partner.explode", entity_type="partner", summary="x")

    def test_write_failure_logged_not_raised(self, caplog):
        logger = AuditLogger(session_factory=BrokenSession)
        with caplog.at_level(logging.ERROR, logger="app.audit.logger"):
            assert _append(logger) is None
        assert "AUDIT WRITE FAILED" in caplog.text
        assert "admin@brdg.app" in caplog.text


class TestList:

    @pytest.fixture
    def entries(self):
        logger = get_audit_logger()
        _append(logger, action=AuditAction.PARTNER_CREATE)
        _append(logger, action=AuditAction.PARTNER_UPDATE)
        _append(logger, admin=OTHER_ADMIN, action=AuditAction.WHITELIST_SYNC, entity=AuditEntityType.WHITELIST)
        _append(logger, action=AuditAction.ACCESS_REQUEST_APPROVE, entity=AuditEntityType.ACCESS_REQUEST)
        return logger

    def test_newest_first(self, entries):
        data = entries.list()["data"]
        assert len(data) == 4
        assert [e["createdAt"] for e in data] == sorted((e["createdAt"] for e in data), reverse=True)

    def test_filter_by_action(self, entries):
        result = entries.list(action="partner.update")
        assert [e["action"] for e in result["data"]] == ["partner.update"]

    def test_filter_by_entity_type(self, entries):
        assert entries.list(entity_type="partner")["pagination"]["total"] == 2

    def test_filter_by_admin(self, entries):
        result = entries.list(admin_email="ops@brdg.app")
        assert [e["adminEmail"] for e in result["data"]] == ["ops@brdg.app"]

    def test_filter_by_date_range(self, entries):
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        assert entries.list(date_from=now - timedelta(hours=1))["pagination"]["total"] == 4
        assert entries.list(date_from=now + timedelta(hours=1))["pagination"]["total"] == 0
        assert entries.list(date_to=now - timedelta(hours=1))["pagination"]["total"] == 0

    def test_pagination(self, entries):
        result = entries.list(page=2, page_size=3)
        assert len(result["data"]) == 1
        assert result["pagination"] == {"page": 2, "pageSize": 3, "total": 4, "totalPages": 2}
