import sqlite3
import time
from datetime import datetime, timedelta
from ipaddress import ip_address

import dns.message
import dns.rrset
import pytest

from blocky.model import Request, Response, ResponseType
from blocky.querylog.database_writer import DatabaseWriter, create_database_writer
from blocky.querylog.writer import LogEntry


def _answer_msg():
    msg = dns.message.Message()
    msg.answer.append(
        dns.rrset.from_text("example.com.", 123, "IN", "A", "123.124.122.122")
    )
    return msg


def _entry(start):
    return LogEntry(
        request=Request(
            client_ip=ip_address("10.0.0.1"),
            client_names=["client1", "alias"],
            req=dns.message.make_query("google.de.", "A"),
        ),
        response=Response(res=_answer_msg(), reason="Resolved", rtype=ResponseType.RESOLVED),
        start=start,
        duration_ms=20,
    )


def _eventually(fn, expected, timeout=5.0):
    deadline = time.monotonic() + timeout
    value = fn()
    while value != expected and time.monotonic() < deadline:
        time.sleep(0.01)
        value = fn()
    return value


@pytest.fixture
def make_writer():
    writers = []

    def factory(retention, period=3600, url="sqlite://"):
        writer = DatabaseWriter(url, retention, period)
        writers.append(writer)
        return writer

    yield factory
    for writer in writers:
        writer.close()


def test_entries_persisted_and_kept_within_retention(make_writer):
    writer = make_writer(7)
    writer.write(_entry(datetime.now()))
    writer.write(_entry(datetime.now() - timedelta(days=2)))
    writer.flush()
    assert writer.count() == 2

    writer.clean_up()
    assert writer.count() == 2


def test_old_entries_deleted(make_writer):
    writer = make_writer(1)
    writer.write(_entry(datetime.now()))
    writer.write(_entry(datetime.now() - timedelta(days=2)))
    writer.flush()
    assert writer.count() == 2

    writer.clean_up()
    assert writer.count() == 1


def test_nothing_written_before_flush(make_writer):
    writer = make_writer(7)
    writer.write(_entry(datetime.now()))
    assert writer.count() == 0


def test_periodic_flush(make_writer):
    writer = make_writer(7, period=0.01)
    writer.write(_entry(datetime.now()))
    assert _eventually(writer.count, 1) == 1


def test_stored_columns(tmp_path):
    path = tmp_path / "querylog.db"
    with DatabaseWriter(f"sqlite:///{path}", 7, 3600) as writer:
        writer.write(_entry(datetime(2023, 1, 2, 3, 4, 5)))
    with sqlite3.connect(path) as conn:
        row = conn.execute(
            "SELECT client_ip, client_name, duration_ms, reason, response_type, "
            "question_type, question_name, effective_tldp, answer, response_code "
            "FROM log_entries"
        ).fetchone()
    assert row == (
        "10.0.0.1",
        "client1; alias",
        20,
        "Resolved",
        "RESOLVED",
        "A",
        "google.de",
        "google.de",
        "A (123.124.122.122)",
        "NOERROR",
    )


def test_mysql_wrong_parameters():
    with pytest.raises(ConnectionError) as info:
        create_database_writer("mysql", "wrong param", 7, 1)
    assert str(info.value).startswith("can't create database connection")


def test_postgresql_wrong_parameters():
    with pytest.raises(ConnectionError) as info:
        create_database_writer("postgresql", "wrong param", 7, 1)
    assert str(info.value).startswith("can't create database connection")


def test_invalid_database_type():
    with pytest.raises(ValueError) as info:
        create_database_writer("invalidsql", "", 7, 1)
    assert str(info.value).startswith("incorrect database type provided")