from models.ledger import RequestLedger


def test_first_request_creates_entry():
    ledger = RequestLedger()

    assert ledger.add_request("bad bunny - tití me preguntó", "u1") is True

    top = ledger.get_top()
    assert top[0][0] == "bad bunny - tití me preguntó"
    assert top[0][1].count == 1


def test_same_user_counts_once():
    ledger = RequestLedger()
    ledger.add_request("despacito", "u1")

    assert ledger.add_request("despacito", "u1") is False
    assert ledger.count_for("despacito") == 1


def test_keys_are_case_and_space_insensitive():
    ledger = RequestLedger()
    ledger.add_request("Bad Bunny", "u1")
    ledger.add_request("  bad   bunny ", "u2")

    assert len(ledger) == 1
    assert ledger.count_for("BAD BUNNY") == 2


def test_empty_song_is_ignored():
    ledger = RequestLedger()

    assert ledger.add_request("   ", "u1") is False
    assert len(ledger) == 0


def test_count_matches_distinct_users():
    ledger = RequestLedger()
    for user in ["a", "b", "a", "c", "b"]:
        ledger.add_request("song x", user)

    entry = ledger.get_top(1)[0][1]
    assert entry.count == 3
    assert entry.count == len(entry.seen_users)


def test_ranking_orders_by_count_then_insertion():
    ledger = RequestLedger()
    ledger.add_request("first", "u1")
    ledger.add_request("second", "u1")
    ledger.add_request("third", "u1")
    ledger.add_request("third", "u2")

    assert [song for song, _ in ledger.get_top(5)] == ["third", "first", "second"]


def test_get_top_limits():
    ledger = RequestLedger()
    for i in range(7):
        ledger.add_request(f"song {i}", "u1")

    assert len(ledger.get_top()) == 5
    assert len(ledger.get_top(2)) == 2
    assert ledger.get_top(0) == []


def test_snapshot_does_not_leak_mutations():
    ledger = RequestLedger()
    ledger.add_request("song", "u1")
    snapshot = ledger.get_top(1)[0][1]

    ledger.add_request("song", "u2")

    assert snapshot.count == 1
    assert "u2" not in snapshot.seen_users
    assert ledger.count_for("song") == 2


def test_to_dict_positions():
    ledger = RequestLedger()
    ledger.add_request("a", "u1")
    ledger.add_request("b", "u1")
    ledger.add_request("b", "u2")

    data = ledger.to_dict()

    assert data["total_songs"] == 2
    assert data["top"][0]["position"] == 1
    assert data["top"][0]["song"] == "b"
    assert data["top"][0]["count"] == 2
    assert ledger.top_songs(1) == ["b"]
