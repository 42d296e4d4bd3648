import asyncio

from homediag.errors import StreamError
from homediag.turn import NO_DIAGNOSIS_ERROR, StreamTurn, TurnPhase

CHUNKS = [
    "<thought>Check",
    "ing pipe</thought><js",
    'on>{"diagnosis":"Le',
    'ak","trade":"Plumber"}</json>',
]


async def _stream(parts, error=None):
    for p in parts:
        yield p
    if error is not None:
        raise error


class Recorder:
    def __init__(self):
        self.commits = []
        self.trades = []

    async def commit(self, result):
        self.commits.append(result)

    async def trade(self, trade):
        self.trades.append(trade)


def test_chunked_scenario_snapshots():
    rec = Recorder()
    reasoning_updates = []

    async def main():
        turn = StreamTurn(rec.commit, on_trade=rec.trade, on_reasoning=reasoning_updates.append)

        assert turn.feed(CHUNKS[0]) is False
        assert turn.state.phase is TurnPhase.STREAMING
        assert turn.state.reasoning == "Check"

        assert turn.feed(CHUNKS[1]) is False
        assert turn.state.reasoning == "Checking pipe"

        assert turn.feed(CHUNKS[2]) is False
        assert turn.state.last_parsed is None
        assert turn.state.early_trade_triggered is False

        assert turn.feed(CHUNKS[3]) is True
        record = turn.state.last_parsed
        assert (record.diagnosis, record.trade) == ("Leak", "Plumber")
        assert turn.state.is_complete is True
        assert turn.state.early_trade_triggered is True

        await asyncio.sleep(0)
        result = await turn.finish()
        return result

    result = asyncio.run(main())
    assert result.ok
    assert reasoning_updates == ["Check", "Checking pipe"]
    assert rec.trades == ["Plumber"]
    assert len(rec.commits) == 1


def test_run_commits_once_for_chunked_stream():
    rec = Recorder()

    async def main():
        turn = StreamTurn(rec.commit, on_trade=rec.trade)
        result = await turn.run(_stream(CHUNKS))
        await asyncio.sleep(0)
        return result

    result = asyncio.run(main())
    assert result.phase is TurnPhase.DONE
    assert result.reasoning == "Checking pipe"
    assert len(rec.commits) == 1
    assert rec.commits[0].record.diagnosis == "Leak"
    assert rec.trades == ["Plumber"]


def test_trade_in_three_snapshots_triggers_once():
    rec = Recorder()
    parts = [
        '<json>{"trade":"Plumber",',
        '"diagnosis":"Leak"',
        "}</json>",
    ]

    async def main():
        turn = StreamTurn(rec.commit, on_trade=rec.trade)
        for p in parts:
            turn.feed(p)
            await asyncio.sleep(0)
        await turn.finish()
        await asyncio.sleep(0)

    asyncio.run(main())
    assert rec.trades == ["Plumber"]


def test_trade_gate_blocks_trigger():
    rec = Recorder()

    async def main():
        turn = StreamTurn(rec.commit, on_trade=rec.trade, trade_gate=lambda trade: False)
        await turn.run(_stream(CHUNKS))
        await asyncio.sleep(0)
        return turn

    turn = asyncio.run(main())
    assert rec.trades == []
    assert turn.state.early_trade_triggered is False
    assert len(rec.commits) == 1


def test_closing_tag_then_eof_commits_exactly_once():
    rec = Recorder()
    parts = ['<json>{"diagnosis":"Cracked Wall","trade":"Builder"}</json>', "\nanything after the tag"]

    async def main():
        turn = StreamTurn(rec.commit)
        await turn.run(_stream(parts))
        await turn.finish()
        await turn.finish()
        return turn

    turn = asyncio.run(main())
    assert len(rec.commits) == 1
    assert turn.state.committed is True
    assert turn.state.phase is TurnPhase.DONE


def test_eof_fallback_without_tags():
    rec = Recorder()
    parts = ['Some text {"diagnosis":"Crack",', ' "trade":"Builder"} trailing']

    result = asyncio.run(StreamTurn(rec.commit).run(_stream(parts)))
    assert result.ok
    assert result.record.diagnosis == "Crack"
    assert len(rec.commits) == 1


def test_stream_error_before_first_chunk():
    rec = Recorder()

    result = asyncio.run(StreamTurn(rec.commit).run(_stream([], StreamError("HTTP 500", status_code=500))))
    assert result.phase is TurnPhase.FAILED
    assert result.error == "HTTP 500"
    assert rec.commits == []


def test_stream_error_mid_stream_does_not_commit_partial():
    rec = Recorder()
    parts = ['<json>{"diagnosis":"Leak"}']

    result = asyncio.run(StreamTurn(rec.commit).run(_stream(parts, StreamError("connection reset"))))
    assert result.phase is TurnPhase.FAILED
    assert result.record.diagnosis == "Leak"
    assert rec.commits == []


def test_closed_json_without_diagnosis_fails():
    rec = Recorder()
    parts = ["<thought>hmm</thought>", '<json>{"message": "Could you send a closer photo?"}</json>']

    result = asyncio.run(StreamTurn(rec.commit).run(_stream(parts)))
    assert result.phase is TurnPhase.FAILED
    assert result.error == NO_DIAGNOSIS_ERROR
    assert rec.commits == []


def test_cancel_mid_stream_drops_result():
    rec = Recorder()

    async def main():
        turn = StreamTurn(rec.commit)

        async def chunks():
            yield '<json>{"diagnosis":"Leak"'
            turn.cancel()
            yield "}</json>"

        return await turn.run(chunks())

    result = asyncio.run(main())
    assert result.phase is TurnPhase.CANCELLED
    assert rec.commits == []


def test_superseded_turn_does_not_commit():
    rec = Recorder()
    current = {"token": "a"}

    async def main():
        turn = StreamTurn(rec.commit, is_current=lambda: current["token"] == "a")

        async def chunks():
            yield '<json>{"diagnosis":"Leak"}'
            current["token"] = "b"

        return await turn.run(chunks())

    result = asyncio.run(main())
    assert result.phase is TurnPhase.CANCELLED
    assert rec.commits == []
