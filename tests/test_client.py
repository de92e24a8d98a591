import io
from datetime import datetime, timedelta, timezone

import pytest
import requests
import responses
from requests.adapters import BaseAdapter

from mailbucket.client import ApiError, Client, RestClient
from mailbucket.model import Timestamp

BASE = "http://localhost:9000"
TEST_BASE = "http://test.local:8080"
TEST_BASE_PATH = "http://test.local:8080/inbucket"
UTC_MINUS_7 = timezone(timedelta(hours=-7))


@pytest.fixture
def http():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


def test_list_mailbox(http):
    http.add(
        responses.GET,
        BASE + "/api/v1/mailbox/testbox",
        body="""[
            {
                "mailbox": "testbox",
                "id": "1",
                "from": "fromuser",
                "subject": "test subject",
                "date": "2013-10-15T16:12:02.231532239-07:00",
                "size": 264,
                "seen": true
            }
        ]""",
        content_type="application/json",
    )
    headers = Client(BASE).list_mailbox("testbox")
    assert len(headers) == 1
    h = headers[0]
    assert h.mailbox == "testbox"
    assert h.id == "1"
    assert h.from_ == "fromuser"
    assert h.subject == "test subject"
    assert h.date == Timestamp(datetime(2013, 10, 15, 16, 12, 2, tzinfo=UTC_MINUS_7), 231532239)
    assert h.size == 264
    assert h.seen is True


def test_get_message(http):
    http.add(
        responses.GET,
        BASE + "/api/v1/mailbox/testbox/20170107T224128-0000",
        body="""{
            "mailbox": "testbox",
            "id": "20170107T224128-0000",
            "from": "fromuser",
            "subject": "test subject",
            "date": "2013-10-15T16:12:02.231532239-07:00",
            "size": 264,
            "seen": true,
            "body": {"text": "Plain text", "html": "<html>"}
        }""",
        content_type="application/json",
    )
    m = Client(BASE).get_message("testbox", "20170107T224128-0000")
    assert m.mailbox == "testbox"
    assert m.id == "20170107T224128-0000"
    assert m.from_ == "fromuser"
    assert m.subject == "test subject"
    assert m.date == Timestamp(datetime(2013, 10, 15, 16, 12, 2, tzinfo=UTC_MINUS_7), 231532239)
    assert m.size == 264
    assert m.seen is True
    assert m.body.text == "Plain text"
    assert m.body.html == "<html>"


def test_mark_seen(http):
    http.add(responses.PATCH, BASE + "/api/v1/mailbox/testbox/20170107T224128-0000", body="")
    Client(BASE).mark_seen("testbox", "20170107T224128-0000")
    assert len(http.calls) == 1
    assert http.calls[0].request.method == "PATCH"


def test_get_message_source(http):
    http.add(
        responses.GET,
        BASE + "/api/v1/mailbox/testbox/20170107T224128-0000/source",
        body="message source",
    )
    source = Client(BASE).get_message_source("testbox", "20170107T224128-0000")
    assert source == b"message source"


class CountingAdapter(BaseAdapter):
    def __init__(self, body):
        super().__init__()
        self.body = body
        self.calls = 0

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        self.calls += 1
        response = requests.Response()
        response.status_code = 200
        response.reason = "OK"
        response.raw = io.BytesIO(self.body)
        response.url = request.url
        response.request = request
        return response

    def close(self):
        pass


def test_custom_transport():
    adapter = CountingAdapter(b"Custom Transport")
    client = Client(BASE, transport=adapter)
    source = client.get_message_source("testbox", "20170107T224128-0000")
    assert source == b"Custom Transport"
    assert adapter.calls == 1


def test_delete_message(http):
    http.add(responses.DELETE, BASE + "/api/v1/mailbox/testbox/20170107T224128-0000", body="")
    Client(BASE).delete_message("testbox", "20170107T224128-0000")
    assert [call.request.method for call in http.calls] == ["DELETE"]


def test_purge_mailbox(http):
    http.add(responses.DELETE, BASE + "/api/v1/mailbox/testbox", body="")
    Client(BASE).purge_mailbox("testbox")
    assert [call.request.url for call in http.calls] == [BASE + "/api/v1/mailbox/testbox"]


def test_message_header_helpers(http):
    http.add(
        responses.GET,
        BASE + "/api/v1/mailbox/testbox",
        body="""[{"mailbox":"mailbox1","id":"id1","from":"from1","subject":"subject1",
                  "date":"2017-01-01T00:00:00.000-07:00","size":100,"seen":true}]""",
        content_type="application/json",
    )
    http.add(responses.DELETE, BASE + "/api/v1/mailbox/mailbox1/id1", body="")
    http.add(responses.GET, BASE + "/api/v1/mailbox/mailbox1/id1/source", body="source1")
    http.add(
        responses.GET,
        BASE + "/api/v1/mailbox/mailbox1/id1",
        body="""{"mailbox":"mailbox1","id":"id1","from":"from1","subject":"subject1",
                 "date":"2017-01-01T00:00:00.000-07:00","size":100}""",
        content_type="application/json",
    )
    headers = Client(BASE).list_mailbox("testbox")
    assert len(headers) == 1
    header = headers[0]

    header.delete()
    assert header.get_source() == b"source1"

    message = header.get_message()
    assert message.id == "id1"
    assert message.size == 100
    message.delete()
    assert message.get_source() == b"source1"
    deletes = [c for c in http.calls if c.request.method == "DELETE"]
    assert len(deletes) == 2


def test_example_usage(http):
    http.add(
        responses.GET,
        BASE + "/api/v1/mailbox/user1",
        body="""[
            {"mailbox": "user1", "id": "20180107T224128-0000", "subject": "First subject"},
            {"mailbox": "user1", "id": "20180108T121212-0123", "subject": "Second subject"}
        ]""",
    )
    http.add(
        responses.GET,
        BASE + "/api/v1/mailbox/user1/20180107T224128-0000",
        body="""{
            "mailbox": "user1",
            "id": "20180107T224128-0000",
            "from": "james@example.com",
            "subject": "First subject",
            "body": {"text": "This is the plain text body"}
        }""",
    )
    http.add(responses.DELETE, BASE + "/api/v1/mailbox/user1/20180108T121212-0123", body="")

    client = Client(BASE)
    headers = client.list_mailbox("user1")
    assert [(h.id, h.subject) for h in headers] == [
        ("20180107T224128-0000", "First subject"),
        ("20180108T121212-0123", "Second subject"),
    ]
    message = headers[0].get_message()
    assert message.from_ == "james@example.com"
    assert message.body.text == "This is the plain text body"
    headers[1].delete()
    assert http.calls[-1].request.method == "DELETE"


def test_list_mailbox_error_status(http):
    http.add(responses.GET, BASE + "/api/v1/mailbox/testbox", status=500, body="boom")
    with pytest.raises(ApiError) as excinfo:
        Client(BASE).list_mailbox("testbox")
    assert excinfo.value.status_code == 500


def test_delete_missing_message(http):
    http.add(responses.DELETE, BASE + "/api/v1/mailbox/testbox/nope", status=404)
    with pytest.raises(ApiError) as excinfo:
        Client(BASE).delete_message("testbox", "nope")
    assert excinfo.value.status_code == 404


def test_source_error_status(http):
    http.add(responses.GET, BASE + "/api/v1/mailbox/testbox/nope/source", status=404)
    with pytest.raises(ApiError) as excinfo:
        Client(BASE).get_message_source("testbox", "nope")
    assert excinfo.value.status_code == 404


@pytest.mark.parametrize(
    "method, uri, base, want_url, want_body",
    [
        ("GET", "/doget", TEST_BASE, TEST_BASE + "/doget", b"Test body 1"),
        ("POST", "/dopost", TEST_BASE, TEST_BASE + "/dopost", b"Test body 2"),
        ("GET", "/doget", TEST_BASE_PATH, TEST_BASE_PATH + "/doget", b"Test body 3"),
        ("POST", "/dopost", TEST_BASE_PATH, TEST_BASE_PATH + "/dopost", b"Test body 4"),
    ],
)
def test_do_table(http, method, uri, base, want_url, want_body):
    http.add(method, want_url, body="")
    client = RestClient(base, requests.Session(), 30.0)
    response = client.do(method, uri, want_body)
    response.close()
    request = http.calls[0].request
    assert request.method == method
    assert request.url == want_url
    assert request.body == want_body


def test_do_json(http):
    http.add(responses.GET, TEST_BASE + "/doget", body='{"foo": "bar"}')
    client = RestClient(TEST_BASE, requests.Session(), 30.0)
    assert client.do_json("GET", "/doget") == {"foo": "bar"}
    request = http.calls[0].request
    assert request.method == "GET"
    assert request.url == TEST_BASE + "/doget"


def test_do_json_empty_body(http):
    http.add(responses.GET, TEST_BASE + "/doget", body="")
    client = RestClient(TEST_BASE, requests.Session(), 30.0)
    assert client.do_json("GET", "/doget") is None
    assert http.calls[0].request.url == TEST_BASE + "/doget"


def test_do_json_error_status(http):
    http.add(responses.GET, TEST_BASE + "/doget", status=503, body="")
    client = RestClient(TEST_BASE, requests.Session(), 30.0)
    with pytest.raises(ApiError) as excinfo:
        client.do_json("GET", "/doget")
    assert excinfo.value.status_code == 503
    assert 'GET for "/doget"' in str(excinfo.value)


def test_unbound_header_cannot_fetch():
    from mailbucket.client import MessageHeader

    with pytest.raises(RuntimeError):
        MessageHeader(mailbox="m", id="1").get_source()