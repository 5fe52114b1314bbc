import asyncio

import pytest

from graph.models import CleanedLead, ModelScore, ReviewSnapshot, ScoringInput, TokenUsage
from graph.nodes.score import select_weights
from tools.errors import ScoringCollaboratorFailure
from tools.score_batcher import ScoreBatcher


def scoring_input(lead_id: str) -> ScoringInput:
    return ScoringInput(
        cleaned=CleanedLead(lead_id=lead_id, company=f"Company {lead_id}"),
        reviews=ReviewSnapshot.not_found(),
        weights=select_weights(None),
    )


class RecordingScorer:

    def __init__(self, fail_for=()):
        self.batches = []
        self.fail_for = set(fail_for)

    async def __call__(self, items):
        ids = [item.cleaned.lead_id for item in items]
        self.batches.append(ids)
        await asyncio.sleep(0)
        if self.fail_for.intersection(ids):
            raise RuntimeError(f"bad lead in {ids}")
        return [ModelScore(lead_id=i, reasoning=f"scored {i}") for i in ids], TokenUsage(total_tokens=10 * len(ids))


class TestScoreBatcher:

    async def test_full_batches_flush_immediately(self):
        scorer = RecordingScorer()
        batcher = ScoreBatcher(scorer, batch_size=3, flush_delay=10.0)

        results = await asyncio.wait_for(
            asyncio.gather(*(batcher.submit(scoring_input(str(i))) for i in range(6))), timeout=1.0
        )

        assert [r.lead_id for r in results] == [str(i) for i in range(6)]
        assert scorer.batches == [["0", "1", "2"], ["3", "4", "5"]]
        assert batcher.calls == 2

    async def test_partial_batch_flushes_after_delay(self):
        scorer = RecordingScorer()
        batcher = ScoreBatcher(scorer, batch_size=5, flush_delay=0.01)

        results = await asyncio.gather(batcher.submit(scoring_input("a")), batcher.submit(scoring_input("b")))

        assert [r.reasoning for r in results] == ["scored a", "scored b"]
        assert scorer.batches == [["a", "b"]]

    async def test_failed_batch_isolates_bad_lead(self):
        scorer = RecordingScorer(fail_for={"b"})
        usage = []
        batcher = ScoreBatcher(scorer, batch_size=3, flush_delay=0.01, on_usage=usage.append)

        results = await asyncio.gather(
            *(batcher.submit(scoring_input(i)) for i in ("a", "b", "c")), return_exceptions=True
        )

        assert results[0].lead_id == "a"
        assert isinstance(results[1], ScoringCollaboratorFailure)
        assert "bad lead" in str(results[1])
        assert results[2].lead_id == "c"
        assert scorer.batches[0] == ["a", "b", "c"]
        assert sorted(map(tuple, scorer.batches[1:])) == [("a",), ("b",), ("c",)]
        assert sum(u.total_tokens for u in usage) == 20

    async def test_wrong_result_count_is_failure(self):
        async def short_scorer(items):
            return [], TokenUsage()

        batcher = ScoreBatcher(short_scorer, batch_size=1)

        with pytest.raises(ScoringCollaboratorFailure, match="Expected 1 scores"):
            await batcher.submit(scoring_input("x"))
