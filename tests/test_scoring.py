from mediahub.agent.scoring import pick_best, score


def _probe(**overrides) -> dict:
    probe = {
        "paused": True, "muted": False, "currentTime": 0, "duration": 120,
        "readyState": 4, "remotePlaybackDisabled": False, "hasLayout": True,
        "isVideo": True, "hasSource": True,
    }
    probe.update(overrides)
    return probe


def test_playing_outscores_paused_by_exactly_100() -> None:
    assert score(_probe(paused=False)) - score(_probe(paused=True)) == 100


def test_remote_playback_disabled_is_excluded() -> None:
    assert score(_probe(paused=False, remotePlaybackDisabled=True)) == -1
    assert pick_best([("a", score(_probe(remotePlaybackDisabled=True)))]) is None


def test_all_negative_candidates_are_never_selected() -> None:
    not_ready = _probe(readyState=0, duration=None, hasLayout=False, isVideo=False,
                       muted=True, hasSource=False)
    assert score(not_ready) == -10
    assert pick_best([("a", -10), ("b", -1)]) is None


def test_duration_bonus_is_capped() -> None:
    short = score(_probe(duration=60))
    long = score(_probe(duration=60 * 60 * 5))
    unknown = score(_probe(duration=None))
    assert short - unknown == 1
    assert long - unknown == 30


def test_pick_best_prefers_highest_and_keeps_document_order_on_ties() -> None:
    assert pick_best([("a", 10), ("b", 150), ("c", 40)]) == ("b", 150)
    assert pick_best([("first", 20), ("second", 20)]) == ("first", 20)
    assert pick_best([("zero", 0)]) == ("zero", 0)
