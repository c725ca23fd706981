import pytest

from conftest import FakeTransport
from distributor import (
    DeliveryFailed,
    DistributionInProgress,
    InsufficientSupply,
    KeyDistributor,
    RecordNotSaved,
)
from records import FileUnavailable, RecordStore

TEMPLATE = "Your code: <STEAM_KEY>"


def read(path):
    with open(path, encoding="utf-8") as f:
        return f.read()


def make_distributor(users_path, keys_path, transport, delay=0):
    return KeyDistributor(users_path, keys_path, TEMPLATE, transport, delay=delay)


@pytest.mark.asyncio
async def test_sends_every_user_a_key_and_marks_both_files(write_lines, transport):
    users = write_lines("users.txt", ["alice", "bob"])
    keys = write_lines("keys.txt", ["AAAA-1111", "BBBB-2222"])
    dist = make_distributor(users, keys, transport)

    dist.prepare()
    sent = await dist.run()

    assert sent == 2
    assert transport.sent == [("alice", "Your code: AAAA-1111"), ("bob", "Your code: BBBB-2222")]
    assert read(users) == "#alice\n#bob\n"
    assert read(keys) == "#AAAA-1111\n#BBBB-2222\n"


@pytest.mark.asyncio
async def test_insufficient_supply_aborts_before_sending(write_lines, transport):
    users = write_lines("users.txt", ["alice", "bob", "carol"])
    keys = write_lines("keys.txt", ["AAAA-1111"])
    dist = make_distributor(users, keys, transport)

    with pytest.raises(InsufficientSupply) as exc:
        dist.prepare()
    assert (exc.value.have, exc.value.need) == (1, 3)

    with pytest.raises(InsufficientSupply):
        await dist.run()

    assert transport.calls == 0
    assert read(users) == "alice\nbob\ncarol\n"
    assert read(keys) == "AAAA-1111\n"


@pytest.mark.asyncio
async def test_already_consumed_users_are_skipped(write_lines, transport):
    users = write_lines("users.txt", ["#alice", "bob"])
    keys = write_lines("keys.txt", ["AAAA-1111", "BBBB-2222"])
    dist = make_distributor(users, keys, transport)

    pairings = dist.prepare()
    assert [(p.recipient.value, p.code.value) for p in pairings] == [("bob", "AAAA-1111")]

    assert await dist.run() == 1
    assert transport.sent == [("bob", "Your code: AAAA-1111")]
    assert read(users) == "#alice\n#bob\n"
    assert read(keys) == "#AAAA-1111\nBBBB-2222\n"


@pytest.mark.asyncio
async def test_used_keys_are_not_paired_again(write_lines, transport):
    users = write_lines("users.txt", ["alice", "bob"])
    keys = write_lines("keys.txt", ["#USED-0000", "AAAA-1111", "BBBB-2222", "CCCC-3333"])
    dist = make_distributor(users, keys, transport)

    await dist.run()

    assert transport.sent == [("alice", "Your code: AAAA-1111"), ("bob", "Your code: BBBB-2222")]
    assert read(keys) == "#USED-0000\n#AAAA-1111\n#BBBB-2222\nCCCC-3333\n"


@pytest.mark.asyncio
async def test_delivery_failure_stops_run_and_keeps_prior_marks(write_lines):
    users = write_lines("users.txt", ["alice", "bob", "carol"])
    keys = write_lines("keys.txt", ["AAAA-1111", "BBBB-2222", "CCCC-3333"])
    transport = FakeTransport(fail_at=1)
    dist = make_distributor(users, keys, transport)

    with pytest.raises(DeliveryFailed) as exc:
        await dist.run()

    assert exc.value.recipient == "bob"
    assert exc.value.line_number == 2
    assert transport.calls == 2
    assert read(users) == "#alice\nbob\ncarol\n"
    assert read(keys) == "#AAAA-1111\nBBBB-2222\nCCCC-3333\n"


@pytest.mark.asyncio
async def test_transport_exception_is_wrapped_and_run_can_resume(write_lines):
    users = write_lines("users.txt", ["alice", "bob"])
    keys = write_lines("keys.txt", ["AAAA-1111", "BBBB-2222"])
    boom = RuntimeError("/helix/whispers failed (429)")
    transport = FakeTransport(fail_at=0, raise_error=boom)
    dist = make_distributor(users, keys, transport)

    with pytest.raises(DeliveryFailed) as exc:
        await dist.run()
    assert exc.value.underlying is boom
    assert read(users) == "alice\nbob\n"

    # Running again re-reads the files and starts from the first unsent user
    assert await dist.run() == 2
    assert transport.sent == [("alice", "Your code: AAAA-1111"), ("bob", "Your code: BBBB-2222")]


@pytest.mark.asyncio
async def test_second_run_sends_nothing(write_lines, transport):
    users = write_lines("users.txt", ["alice"])
    keys = write_lines("keys.txt", ["AAAA-1111"])
    dist = make_distributor(users, keys, transport)

    assert await dist.run() == 1
    assert await dist.run() == 0
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_delay_between_sends_only(write_lines, transport):
    users = write_lines("users.txt", ["alice", "bob", "carol"])
    keys = write_lines("keys.txt", ["AAAA-1111", "BBBB-2222", "CCCC-3333"])
    dist = make_distributor(users, keys, transport, delay=20)
    sleeps = []

    async def fake_sleep(seconds):
        # Everything before this send is already on disk
        sleeps.append((seconds, RecordStore(users).load()[len(sleeps)].consumed))

    dist._sleep = fake_sleep
    await dist.run()

    assert sleeps == [(20, True), (20, True)]


@pytest.mark.asyncio
async def test_concurrent_run_is_refused(write_lines):
    users = write_lines("users.txt", ["alice", "bob"])
    keys = write_lines("keys.txt", ["AAAA-1111", "BBBB-2222"])
    transport = FakeTransport()
    dist = make_distributor(users, keys, transport, delay=1)
    errors = []

    async def fake_sleep(seconds):
        assert dist.running
        with pytest.raises(DistributionInProgress):
            dist.prepare()
        try:
            await dist.run()
        except DistributionInProgress as e:
            errors.append(e)

    dist._sleep = fake_sleep
    assert await dist.run() == 2
    assert len(errors) == 1
    assert not dist.running


def test_status_report_counts(write_lines, transport):
    users = write_lines("users.txt", ["#alice", "bob", "carol"])
    keys = write_lines("keys.txt", ["#AAAA-1111", "BBBB-2222", "CCCC-3333", "DDDD-4444"])
    dist = make_distributor(users, keys, transport)

    report = dist.status_report()

    assert report.total_recipients == 3
    assert report.consumed_recipients == 1
    assert report.remaining_recipients == 2
    assert report.total_codes == 4
    assert report.consumed_codes == 1
    assert report.remaining_codes == 3
    assert report.running is False
    assert "1/3 sent" in report.summary()
    # Read-only
    assert read(users) == "#alice\nbob\ncarol\n"


def test_missing_file_fails_prepare(tmp_path, write_lines, transport):
    keys = write_lines("keys.txt", ["AAAA-1111"])
    dist = make_distributor(str(tmp_path / "users.txt"), keys, transport)

    with pytest.raises(FileUnavailable) as exc:
        dist.prepare()
    assert exc.value.not_found


def test_preview_and_render(write_lines, transport):
    users = write_lines("users.txt", ["#zed"] + [f"user{i}" for i in range(7)])
    keys = write_lines("keys.txt", [f"KEY-{i}" for i in range(8)])
    dist = make_distributor(users, keys, transport)
    dist.prepare()

    preview_users, preview_keys = dist.preview()
    assert preview_users == ["user0", "user1", "user2", "user3", "user4"]
    assert preview_keys == ["KEY-0", "KEY-1", "KEY-2", "KEY-3", "KEY-4"]
    assert dist.render_message("XYZ") == "Your code: XYZ"


@pytest.mark.asyncio
async def test_key_is_recorded_before_user(write_lines, transport):
    users = write_lines("users.txt", ["alice", "bob"])
    keys = write_lines("keys.txt", ["AAAA-1111", "BBBB-2222", "CCCC-3333"])
    dist = make_distributor(users, keys, transport)

    def fail_user_write(record):
        raise OSError(30, "Read-only file system")

    dist.recipients.mark_consumed = fail_user_write

    with pytest.raises(RecordNotSaved) as exc:
        await dist.run()
    assert exc.value.recipient == "alice"
    assert exc.value.line_number == 1
    assert transport.sent == [("alice", "Your code: AAAA-1111")]
    # The key is burned even though the user line was not updated
    assert read(keys) == "#AAAA-1111\nBBBB-2222\nCCCC-3333\n"
    assert read(users) == "alice\nbob\n"

    # A fresh process never hands the first key to anyone else
    rerun = FakeTransport()
    assert await make_distributor(users, keys, rerun).run() == 2
    assert rerun.sent == [("alice", "Your code: BBBB-2222"), ("bob", "Your code: CCCC-3333")]
