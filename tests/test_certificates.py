"""
Tests for CertificateGenerator and render_certificate_pdf (certificates.py).
"""
import pytest

from onboarding_engine.certificates import Certificate, certificate_id_for, render_certificate_pdf
from onboarding_engine.errors import NotFoundError, SessionNotCompleteError


@pytest.fixture
def completed_session(engine, session, clock):
    sid = session.session_id
    engine.store.record_step_completion(sid, "A", {"status": "completed", "time_spent": 8, "score": 90})
    clock.advance(hours=1)
    engine.store.record_step_completion(sid, "B", {"status": "completed", "time_spent": 12})
    clock.advance(minutes=5)
    return engine.store.complete_session(sid)


class TestGenerateCertificate:
    def test_active_session_is_not_complete(self, engine, session):
        with pytest.raises(SessionNotCompleteError):
            engine.certificates.generate_completion_certificate(session.session_id)

    def test_missing_session_is_plain_not_found(self, engine, abc_path):
        with pytest.raises(NotFoundError) as exc_info:
            engine.certificates.generate_completion_certificate("sess_missing")
        assert not isinstance(exc_info.value, SessionNotCompleteError)

    def test_abandoned_session_is_not_complete(self, engine, session):
        engine.store.abandon_session(session.session_id)
        with pytest.raises(SessionNotCompleteError):
            engine.certificates.generate_completion_certificate(session.session_id)

    def test_contents(self, engine, completed_session):
        cert = engine.certificates.generate_completion_certificate(completed_session.session_id)
        assert isinstance(cert, Certificate)
        assert [s.step_id for s in cert.completed_steps] == ["A", "B"]
        assert cert.completed_steps[0].score == 90
        assert cert.total_time_minutes == pytest.approx(20)
        assert cert.issued_at == completed_session.completed_at
        assert cert.certificate_id == certificate_id_for(completed_session.session_id)
        keys = {a.milestone_key for a in cert.achievements}
        assert {"first_steps", "halfway", "graduate", "speed_runner"} <= keys
        assert cert.total_points == sum(a.data["points"] for a in cert.achievements)

    def test_repeated_calls_are_equal(self, engine, completed_session, clock):
        first = engine.certificates.generate_completion_certificate(completed_session.session_id)
        clock.advance(days=2)
        second = engine.certificates.generate_completion_certificate(completed_session.session_id)
        assert first == second

    def test_certificate_is_immutable(self, engine, completed_session):
        cert = engine.certificates.generate_completion_certificate(completed_session.session_id)
        with pytest.raises(AttributeError):
            cert.user_id = "someone_else"


class TestRenderCertificatePdf:
    def test_returns_pdf_bytes(self, engine, completed_session):
        cert = engine.certificates.generate_completion_certificate(completed_session.session_id)
        data = render_certificate_pdf(cert)
        assert isinstance(data, bytes)
        assert data.startswith(b"%PDF"), "Not a valid PDF header"
        assert len(data) > 1000
