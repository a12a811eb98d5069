import pytest

from analysis_jobs.core.errors import ReferenceGenerationError
from analysis_jobs.models.analysis import AnalysisStatus
from analysis_jobs.services.analyses import create_analysis, report_ref_exists


class FixedReferences:
    """Hands out the given references in order, ignoring what is taken."""

    def __init__(self, *refs):
        self.refs = list(refs)
        self.calls = 0

    def generate(self):
        self.calls += 1
        return self.refs.pop(0)


def create(db, references):
    return create_analysis(db, references, document_key="uploads/plan.pdf", document_name="plan.pdf")


def test_insert_collision_draws_a_new_reference(session_factory, caplog):
    with session_factory() as db:
        create(db, FixedReferences("BAC-2026-00001"))

    references = FixedReferences("BAC-2026-00001", "BAC-2026-00002")
    with session_factory() as db:
        analysis = create(db, references)

    assert references.calls == 2
    assert analysis.report_ref == "BAC-2026-00002"
    assert analysis.status == AnalysisStatus.PENDING.value
    assert any("collided" in r.getMessage() for r in caplog.records)


def test_gives_up_after_three_collisions(session_factory):
    with session_factory() as db:
        create(db, FixedReferences("BAC-2026-00001"))

    references = FixedReferences(*["BAC-2026-00001"] * 4)
    with session_factory() as db, pytest.raises(ReferenceGenerationError):
        create(db, references)

    assert references.calls == 3
    with session_factory() as db:
        assert report_ref_exists(db, "BAC-2026-00001")
        assert not report_ref_exists(db, "BAC-2026-00002")
