"""
Unit tests for the synchronization engine
"""

import logging
from datetime import datetime

import pytest
from sqlalchemy import event, inspect, select
from sqlalchemy.dialects import mysql
from sqlalchemy.exc import OperationalError
from sqlalchemy.schema import CreateTable

from app.database import session_scope
from app.models import (
    AiRequest, AuditLog, ClinicalForm, ClinicalSession, DiagnosticReport,
    EncryptedDocument, Patient, RadiologyStudy, Referral, StateTransition
)
from app.modules.sync_engine import (
    KIND_HANDLERS, SessionSnapshot, SyncEngine, check_kind_handlers, plan_sync_referral
)
from app.schemas import DocumentKind, ReferralPolicy, TriagePriority, UpsertOutcome, WorkflowState
from app.services.repository import Repository

T1 = "2024-03-01T08:00:00Z"
T2 = "2024-03-01T10:00:00Z"
T3 = "2024-03-01T12:00:00Z"

BOOKKEEPING = {"synced_at", "created_at", "updated_at"}


def session_doc(**overrides):
    doc = {
        "_id": "session:abc",
        "_rev": "1-a",
        "type": "clinicalSession",
        "patientCpt": "CPT-001",
        "triage": "green",
        "stage": "assessment",
        "chiefComplaint": "Cough",
        "updatedAt": T1,
    }
    doc.update(overrides)
    return doc


def patient_doc(n, updated_at=T1, visit_count=1, rev="1-a"):
    return {
        "_id": f"patient:{n}",
        "_rev": rev,
        "type": "clinicalPatient",
        "updatedAt": updated_at,
        "patient": {"cpt": f"CPT-{n:03d}", "firstName": f"Patient {n}", "visitCount": visit_count},
    }


def fetch_all(session_factory, model):
    with session_scope(session_factory) as db:
        return list(db.execute(select(model).order_by(model.id)).scalars().all())


def fetch_one(session_factory, model):
    rows = fetch_all(session_factory, model)
    assert len(rows) == 1
    return rows[0]


def snapshot(row):
    """Column values without sync bookkeeping"""
    return {
        attr.key: getattr(row, attr.key)
        for attr in inspect(row).mapper.column_attrs
        if attr.key not in BOOKKEEPING
    }


@pytest.fixture
def engine_with_policy(session_factory, clock, event_bus):
    def _build(policy):
        return SyncEngine(session_factory, clock=clock, event_bus=event_bus, referral_policy=policy)
    return _build


class TestIdempotency:
    """Re-applying a document changes nothing"""

    def test_session_applied_twice(self, sync_engine, session_factory):
        """Same session document twice yields one identical row"""
        doc = session_doc(workflowState="TRIAGED", workflowStateUpdatedAt=T1)

        assert sync_engine.upsert(doc) == UpsertOutcome.APPLIED
        first = snapshot(fetch_one(session_factory, ClinicalSession))

        assert sync_engine.upsert(doc) == UpsertOutcome.APPLIED
        assert snapshot(fetch_one(session_factory, ClinicalSession)) == first
        assert len(fetch_all(session_factory, StateTransition)) == 1

    def test_patient_applied_twice(self, sync_engine, session_factory):
        """Same patient document twice yields one identical row"""
        doc = patient_doc(1, visit_count=3)

        sync_engine.upsert(doc)
        first = snapshot(fetch_one(session_factory, Patient))
        sync_engine.upsert(doc)

        assert snapshot(fetch_one(session_factory, Patient)) == first


class TestConflicts:
    """Last-writer-wins on the document update time"""

    def test_stale_session_is_rejected(self, sync_engine, session_factory):
        """An older document never overwrites a newer row"""
        sync_engine.upsert(session_doc(updatedAt=T2, _rev="2-b", chiefComplaint="Fever"))

        outcome = sync_engine.upsert(session_doc(updatedAt=T1, _rev="3-c", chiefComplaint="Cough"))

        assert outcome == UpsertOutcome.SKIPPED
        row = fetch_one(session_factory, ClinicalSession)
        assert row.chief_complaint == "Fever"
        assert row.couch_rev == "2-b"
        assert row.document_updated_at == datetime(2024, 3, 1, 10, 0, 0)

    def test_newer_session_applies(self, sync_engine, session_factory):
        """A newer document replaces the row"""
        sync_engine.upsert(session_doc(updatedAt=T1, chiefComplaint="Cough"))

        assert sync_engine.upsert(session_doc(updatedAt=T2, _rev="2-b", chiefComplaint="Fever")) == UpsertOutcome.APPLIED
        assert fetch_one(session_factory, ClinicalSession).chief_complaint == "Fever"

    def test_same_time_older_revision_is_skipped(self, sync_engine, session_factory):
        """Equal timestamps fall back to the revision"""
        sync_engine.upsert(session_doc(_rev="4-d", chiefComplaint="Fever"))

        assert sync_engine.upsert(session_doc(_rev="2-b", chiefComplaint="Cough")) == UpsertOutcome.SKIPPED
        assert fetch_one(session_factory, ClinicalSession).chief_complaint == "Fever"

    def test_missing_timestamp_is_flagged_and_audited(self, sync_engine, session_factory):
        """Applied, but written to the audit log"""
        sync_engine.upsert(session_doc(updatedAt=T2))
        untimestamped = session_doc(_rev="2-b", chiefComplaint="Headache")
        del untimestamped["updatedAt"]

        assert sync_engine.upsert(untimestamped) == UpsertOutcome.FLAGGED

        row = fetch_one(session_factory, ClinicalSession)
        assert row.chief_complaint == "Headache"
        assert row.document_updated_at == datetime(2024, 3, 1, 10, 0, 0)

        entry = fetch_one(session_factory, AuditLog)
        assert entry.action == "sync_conflict_flagged"
        assert entry.resource_type == "session"
        assert entry.resource_id == "session:abc"
        assert entry.status == "flagged"

    def test_flagged_counts_as_applied(self, sync_engine):
        """Flagged writes are included in the applied count"""
        sync_engine.upsert(patient_doc(1, updated_at=T2))
        untimestamped = patient_doc(1, rev="2-b")
        del untimestamped["updatedAt"]

        result = sync_engine.process_batch([untimestamped])

        assert result.applied == 1
        assert result.flagged == 1

    def test_stale_form_is_rejected(self, sync_engine, session_factory):
        """Forms follow the same rule"""
        form = {"_id": "form:1", "type": "clinicalForm", "schemaId": "peds_respiratory", "status": "completed", "updatedAt": T2}
        sync_engine.upsert(form)

        older = dict(form, status="draft", updatedAt=T1)
        assert sync_engine.upsert(older) == UpsertOutcome.SKIPPED
        assert fetch_one(session_factory, ClinicalForm).status == "completed"


class TestConcurrentDeliveries:
    """Deliveries of the same id serialize on the stored row"""

    LOCKED_LOOKUPS = [
        (patient_doc(1), "patients"),
        (session_doc(), "clinical_sessions"),
        ({"_id": "form:1", "type": "clinicalForm", "schemaId": "peds_respiratory", "updatedAt": T1}, "clinical_forms"),
        ({"_id": "ai:1", "type": "aiLog", "sessionId": "session:abc", "task": "explain_triage", "output": "ok"}, "ai_requests"),
        ({"_id": "report:1", "type": "diagnosticReport", "studyUuid": "study:1", "updatedAt": T1}, "diagnostic_reports"),
        ({"_id": "study:1", "type": "imagingStudy", "patientId": "CPT-001", "updatedAt": T1}, "radiology_studies"),
        ({"_id": "blob:1", "encrypted": True, "payload": "x", "updatedAt": T1}, "encrypted_documents"),
    ]

    @pytest.mark.parametrize("doc,table", LOCKED_LOOKUPS)
    def test_stored_row_is_read_for_update(self, sync_engine, session_factory, doc, table):
        """The conflict check reads the row with SELECT ... FOR UPDATE"""
        statements = []

        def capture(orm_execute_state):
            if orm_execute_state.is_select and not orm_execute_state.is_column_load:
                statements.append(str(orm_execute_state.statement.compile(dialect=mysql.dialect())))

        event.listen(session_factory, "do_orm_execute", capture)

        assert sync_engine.upsert(doc) == UpsertOutcome.APPLIED

        lookups = [sql for sql in statements if f"FROM {table}" in sql]
        assert lookups
        assert all("FOR UPDATE" in sql for sql in lookups)

    def test_concurrent_first_insert_rereads_the_winner(self, sync_engine, session_factory, monkeypatch):
        """An older delivery that loses the insert race is re-decided against the stored row"""
        original = Repository.find_session
        lookups = []

        def racing(self, couch_id, for_update=False):
            lookups.append(for_update)
            if len(lookups) == 1:
                newer = session_doc(_rev="2-b", updatedAt=T2, chiefComplaint="Fever")
                assert sync_engine.upsert(newer) == UpsertOutcome.APPLIED
                return None
            return original(self, couch_id, for_update=for_update)

        monkeypatch.setattr(Repository, "find_session", racing)

        assert sync_engine.upsert(session_doc(chiefComplaint="Cough")) == UpsertOutcome.SKIPPED
        assert fetch_one(session_factory, ClinicalSession).chief_complaint == "Fever"
        assert lookups == [True, True, True]

    def test_sub_second_edits_keep_their_order(self, sync_engine, session_factory):
        """Millisecond timestamps decide between edits within one second"""
        newer = session_doc(_rev="2-b", updatedAt=1709287200900, chiefComplaint="newer")
        older = session_doc(_rev="1-a", updatedAt=1709287200500, chiefComplaint="older")

        assert sync_engine.upsert(newer) == UpsertOutcome.APPLIED
        assert sync_engine.upsert(older) == UpsertOutcome.SKIPPED
        assert fetch_one(session_factory, ClinicalSession).chief_complaint == "newer"

    @pytest.mark.parametrize("model,column", [
        (Patient, "document_updated_at"),
        (ClinicalSession, "document_updated_at"),
        (ClinicalSession, "workflow_state_updated_at"),
        (ClinicalForm, "document_updated_at"),
        (DiagnosticReport, "document_updated_at"),
        (RadiologyStudy, "document_updated_at"),
        (EncryptedDocument, "document_updated_at"),
        (StateTransition, "created_at"),
    ])
    def test_mysql_columns_keep_fractional_seconds(self, model, column):
        """Conflict and ordering timestamps are DATETIME(6) on MySQL"""
        ddl = str(CreateTable(model.__table__).compile(dialect=mysql.dialect()))
        assert f"{column} DATETIME(6)" in ddl


class TestKindDispatch:
    """Handler table checks"""

    def test_full_table_passes(self):
        check_kind_handlers(KIND_HANDLERS)

    def test_missing_kind_raises(self):
        """A kind without a handler is rejected"""
        partial = {kind: name for kind, name in KIND_HANDLERS.items() if kind != DocumentKind.IMAGING}

        with pytest.raises(RuntimeError, match="imaging"):
            check_kind_handlers(partial)


class TestBatchResilience:
    """One bad document never blocks the rest"""

    def test_unknown_kind_among_valid_documents(self, sync_engine, session_factory, caplog):
        """Nine valid documents and one unknown kind"""
        docs = [patient_doc(n) for n in range(1, 6)]
        docs.append({"_id": "grocery:1", "type": "shoppingList"})
        docs.extend(patient_doc(n) for n in range(6, 10))

        with caplog.at_level(logging.INFO, logger="app.modules.sync_engine"):
            result = sync_engine.process_batch(docs)

        assert result.total == 10
        assert result.applied == 9
        assert result.skipped == 1
        assert result.errored == 0
        assert "shoppingList" in caplog.text
        assert len(fetch_all(session_factory, Patient)) == 9

    def test_missing_discriminant_is_skipped(self, sync_engine, caplog):
        """No type at all is logged, not raised"""
        with caplog.at_level(logging.WARNING, logger="app.modules.sync_engine"):
            assert sync_engine.upsert({"_id": "mystery:1", "foo": "bar"}) == UpsertOutcome.SKIPPED
        assert "no type discriminant" in caplog.text

    def test_missing_id_is_skipped(self, sync_engine):
        """Documents without an id are skipped"""
        assert sync_engine.upsert({"type": "clinicalSession"}) == UpsertOutcome.SKIPPED

    def test_mapping_error_is_isolated(self, sync_engine, session_factory):
        """A patient without a tracking code errors alone"""
        broken = {"_id": "patient:nocpt", "type": "clinicalPatient", "firstName": "Nobody"}

        result = sync_engine.process_batch([broken, patient_doc(1), "not a document"])

        assert result.total == 3
        assert result.applied == 1
        assert result.errored == 2
        assert result.errors[0]["id"] == "patient:nocpt"
        assert result.errors[0]["kind"] == "patient"
        assert "tracking code" in result.errors[0]["error"]
        assert result.errors[1]["id"] is None
        assert len(fetch_all(session_factory, Patient)) == 1

    def test_change_rows_are_unwrapped(self, sync_engine, session_factory):
        """Change-feed rows; deletions and doc-less rows are skipped"""
        rows = [
            {"id": "patient:1", "seq": "1-x", "doc": patient_doc(1)},
            {"id": "patient:2", "seq": "2-x", "deleted": True},
            {"id": "patient:3", "seq": "3-x", "changes": [{"rev": "1-a"}]},
        ]

        result = sync_engine.process_batch(rows)

        assert result.applied == 1
        assert result.skipped == 2
        assert len(fetch_all(session_factory, Patient)) == 1

    def test_deleted_document_is_skipped(self, sync_engine):
        """Tombstones are ignored"""
        assert sync_engine.upsert({"_id": "patient:1", "_rev": "3-a", "_deleted": True}) == UpsertOutcome.SKIPPED

    def test_connectivity_error_aborts_batch(self, sync_engine, monkeypatch):
        """A lost database connection propagates"""
        def unavailable(self, model, couch_id, for_update=False):
            raise OperationalError("SELECT 1", {}, Exception("server has gone away"))

        monkeypatch.setattr(Repository, "find_by_couch_id", unavailable)

        with pytest.raises(OperationalError):
            sync_engine.process_batch([patient_doc(1), patient_doc(2)])


class TestEncryptedPayloads:
    """Encrypted envelopes are stored as stubs"""

    def test_stub_then_decrypted_copy(self, sync_engine, session_factory):
        """A decrypted copy supersedes the stub"""
        encrypted = {
            "_id": "session:enc", "_rev": "1-z", "type": "clinicalSession",
            "encrypted": True, "payload": "b64==", "updatedAt": T1,
        }

        assert sync_engine.upsert(encrypted) == UpsertOutcome.APPLIED
        stub = fetch_one(session_factory, EncryptedDocument)
        assert stub.declared_type == "clinicalSession"
        assert stub.raw_document["payload"] == "b64=="
        assert stub.superseded_at is None
        assert fetch_all(session_factory, ClinicalSession) == []

        assert sync_engine.upsert(session_doc(_id="session:enc", _rev="2-y", updatedAt=T2)) == UpsertOutcome.APPLIED
        assert fetch_one(session_factory, EncryptedDocument).superseded_at is not None
        assert fetch_one(session_factory, ClinicalSession).couch_id == "session:enc"

    def test_untyped_encrypted_envelope_is_kept(self, sync_engine, session_factory):
        """Encryption is checked before the discriminant"""
        assert sync_engine.upsert({"_id": "blob:1", "encrypted": True, "payload": "x"}) == UpsertOutcome.APPLIED
        assert fetch_one(session_factory, EncryptedDocument).declared_type is None


class TestPatients:
    """Patient specific rules"""

    def test_visit_count_keeps_maximum(self, sync_engine, session_factory):
        """A newer document with a lower counter does not lower it"""
        sync_engine.upsert(patient_doc(1, updated_at=T1, visit_count=5))
        sync_engine.upsert(patient_doc(1, updated_at=T2, visit_count=2, rev="2-b"))

        assert fetch_one(session_factory, Patient).visit_count == 5

    def test_registered_patient_is_linked_by_tracking_code(self, sync_engine, session_factory):
        """Rows registered without a document id are adopted"""
        with session_scope(session_factory) as db:
            db.add(Patient(cpt="CPT-007", first_name="Registered", visit_count=4))

        assert sync_engine.upsert(patient_doc(7)) == UpsertOutcome.APPLIED

        patient = fetch_one(session_factory, Patient)
        assert patient.couch_id == "patient:7"
        assert patient.first_name == "Patient 7"
        assert patient.visit_count == 4

    def test_tracking_code_owned_by_other_document(self, sync_engine, session_factory):
        """Two documents may not claim one tracking code"""
        sync_engine.upsert(patient_doc(1))
        intruder = patient_doc(1)
        intruder["_id"] = "patient:other"

        assert sync_engine.upsert(intruder) == UpsertOutcome.ERROR
        assert fetch_one(session_factory, Patient).couch_id == "patient:1"

    def test_issued_tracking_code_is_never_rewritten(self, sync_engine, session_factory):
        """A later document with another code keeps the issued one"""
        sync_engine.upsert(patient_doc(1))
        renamed = patient_doc(1, updated_at=T2, rev="2-b")
        renamed["patient"]["cpt"] = "CPT-999"

        assert sync_engine.upsert(renamed) == UpsertOutcome.APPLIED
        assert fetch_one(session_factory, Patient).cpt == "CPT-001"


class TestIdentity:
    """Actor references are resolved through the user directory"""

    def test_session_actor(self, sync_engine, session_factory, users):
        """Email, embedded object and unknown references"""
        sync_engine.upsert(session_doc(createdBy="nurse.jane@clinic.org"))
        assert fetch_one(session_factory, ClinicalSession).created_by_user_id == users["nurse"]

        sync_engine.upsert(session_doc(updatedAt=T2, createdBy={"email": "dr.banda@clinic.org"}))
        assert fetch_one(session_factory, ClinicalSession).created_by_user_id == users["doctor"]

        assert sync_engine.upsert(session_doc(updatedAt=T3, createdBy="ghost")) == UpsertOutcome.APPLIED
        assert fetch_one(session_factory, ClinicalSession).created_by_user_id is None


class TestSessionWorkflowState:
    """Workflow states reported by mobile clients"""

    def test_reported_state_is_audited(self, sync_engine, session_factory, workflow, event_bus):
        """Adopted states write a sync_import transition"""
        sync_engine.upsert(session_doc(workflowState="TRIAGED", workflowStateUpdatedAt=T1))

        row = fetch_one(session_factory, ClinicalSession)
        assert row.workflow_state == "TRIAGED"
        assert row.workflow_state_updated_at == datetime(2024, 3, 1, 8, 0, 0)

        transition = fetch_one(session_factory, StateTransition)
        assert (transition.from_state, transition.to_state) == ("NEW", "TRIAGED")
        assert transition.reason == "sync_import"
        assert transition.transition_metadata["source"] == "sync"

        assert "session.state_changed" in event_bus.names()
        assert workflow.verify_audit_trail(row.id).consistent

    def test_workflow_continues_after_sync(self, sync_engine, session_factory, workflow):
        """The chain started by sync carries on through the state machine"""
        sync_engine.upsert(session_doc(workflowState="TRIAGED", workflowStateUpdatedAt=T1))
        session_id = fetch_one(session_factory, ClinicalSession).id

        workflow.start_treatment(session_id, actor_id=7)

        verification = workflow.verify_audit_trail(session_id)
        assert verification.transition_count == 2
        assert verification.replayed_state == WorkflowState.UNDER_TREATMENT
        assert verification.consistent

    def test_older_state_is_ignored(self, sync_engine, session_factory):
        """A state older than the stored one is not adopted"""
        sync_engine.upsert(session_doc(workflowState="REFERRED", workflowStateUpdatedAt=T2, updatedAt=T2))

        outcome = sync_engine.upsert(session_doc(
            _rev="2-b", updatedAt=T3, workflowState="TRIAGED", workflowStateUpdatedAt=T1, chiefComplaint="Fever"
        ))

        assert outcome == UpsertOutcome.APPLIED
        row = fetch_one(session_factory, ClinicalSession)
        assert row.workflow_state == "REFERRED"
        assert row.chief_complaint == "Fever"
        assert len(fetch_all(session_factory, StateTransition)) == 1

    def test_state_without_timestamp_does_not_override(self, sync_engine, session_factory):
        """Untimestamped states never replace a timestamped one"""
        sync_engine.upsert(session_doc(workflowState="TRIAGED", workflowStateUpdatedAt=T1))
        sync_engine.upsert(session_doc(_rev="2-b", updatedAt=T2, workflowState="UNDER_TREATMENT"))

        assert fetch_one(session_factory, ClinicalSession).workflow_state == "TRIAGED"

    def test_invalid_state_is_ignored(self, sync_engine, session_factory, caplog):
        """Invalid state strings are logged and the row still syncs"""
        with caplog.at_level(logging.WARNING):
            outcome = sync_engine.upsert(session_doc(workflowState="LIMBO"))

        assert outcome == UpsertOutcome.APPLIED
        assert fetch_one(session_factory, ClinicalSession).workflow_state == "NEW"
        assert "LIMBO" in caplog.text

    def test_legacy_review_state(self, sync_engine, session_factory):
        """IN_GP_REVIEW is stored as IN_REVIEW"""
        sync_engine.upsert(session_doc(workflowState="IN_GP_REVIEW", workflowStateUpdatedAt=T1))
        assert fetch_one(session_factory, ClinicalSession).workflow_state == "IN_REVIEW"

    def test_closed_session_is_not_refreshed(self, sync_engine, session_factory):
        """Sync leaves closed sessions alone"""
        sync_engine.upsert(session_doc(workflowState="CLOSED", workflowStateUpdatedAt=T1))

        outcome = sync_engine.upsert(session_doc(_rev="2-b", updatedAt=T2, chiefComplaint="Fever"))

        assert outcome == UpsertOutcome.SKIPPED
        row = fetch_one(session_factory, ClinicalSession)
        assert row.chief_complaint == "Cough"
        assert row.completed_at == datetime(2024, 3, 1, 8, 0, 0)


class TestOtherKinds:
    """AI logs, reports and imaging studies"""

    def test_ai_log_latest_delivery_wins(self, sync_engine, session_factory, users):
        """AI logs always apply"""
        log = {"_id": "ai:1", "type": "aiLog", "sessionId": "session:abc", "task": "explain_triage",
               "output": "first", "userId": "nurse.jane"}

        assert sync_engine.upsert(log) == UpsertOutcome.APPLIED
        assert sync_engine.upsert(dict(log, output="second")) == UpsertOutcome.APPLIED

        entry = fetch_one(session_factory, AiRequest)
        assert entry.request_uuid == "ai:1"
        assert entry.response == "second"
        assert entry.user_id == users["nurse"]

    def test_report(self, sync_engine, session_factory, users):
        """Report fields and radiologist"""
        doc = {"_id": "report:1", "type": "diagnosticReport", "studyUuid": "study:1",
               "radiologistId": "dr.banda", "impression": "Clear lungs", "criticalFindings": "false",
               "updatedAt": T1}

        assert sync_engine.upsert(doc) == UpsertOutcome.APPLIED

        report = fetch_one(session_factory, DiagnosticReport)
        assert report.study_uuid == "study:1"
        assert report.radiologist_id == users["doctor"]
        assert report.critical_findings is False

    def test_imaging_study(self, sync_engine, session_factory):
        """Imaging fields"""
        doc = {"_id": "study:1", "type": "imagingStudy", "patientId": "CPT-001", "modality": "XR",
               "bodyPart": "chest", "priority": "STAT", "updatedAt": T1}

        assert sync_engine.upsert(doc) == UpsertOutcome.APPLIED

        study = fetch_one(session_factory, RadiologyStudy)
        assert study.patient_cpt == "CPT-001"
        assert study.priority == "stat"
        assert study.status == "pending"


class TestReferralPlanning:
    """Pure referral trigger decisions"""

    GREEN_NEW = SessionSnapshot(TriagePriority.GREEN, WorkflowState.NEW)
    RED_NEW = SessionSnapshot(TriagePriority.RED, WorkflowState.NEW)
    YELLOW_REFERRED = SessionSnapshot(TriagePriority.YELLOW, WorkflowState.REFERRED)

    def test_disabled(self):
        """Disabled never triggers"""
        assert plan_sync_referral(ReferralPolicy.DISABLED, None, self.RED_NEW, False) is None

    def test_new_red_session(self):
        """A session created red is routed to a GP"""
        trigger = plan_sync_referral(ReferralPolicy.ALL, None, self.RED_NEW, False)
        assert trigger.trigger == "red_triage"
        assert trigger.priority == TriagePriority.RED
        assert trigger.assigned_to_role == "gp"
        assert trigger.specialty == "general_practice"

    def test_escalation_to_red(self):
        """Escalation triggers, staying red does not"""
        assert plan_sync_referral(ReferralPolicy.RED_TRIAGE, self.GREEN_NEW, self.RED_NEW, False) is not None
        assert plan_sync_referral(ReferralPolicy.RED_TRIAGE, self.RED_NEW, self.RED_NEW, False) is None

    def test_open_referral_blocks(self):
        """Never a second open referral"""
        assert plan_sync_referral(ReferralPolicy.ALL, None, self.RED_NEW, True) is None

    def test_reported_referred_state(self):
        """REFERRED reported for the first time"""
        trigger = plan_sync_referral(ReferralPolicy.WORKFLOW_REFERRED, self.GREEN_NEW, self.YELLOW_REFERRED, False)
        assert trigger.trigger == "workflow_referred"
        assert trigger.priority == TriagePriority.YELLOW
        assert plan_sync_referral(ReferralPolicy.WORKFLOW_REFERRED, self.YELLOW_REFERRED, self.YELLOW_REFERRED, False) is None

    def test_policies_are_independent(self):
        """Each policy only reacts to its own trigger"""
        assert plan_sync_referral(ReferralPolicy.WORKFLOW_REFERRED, None, self.RED_NEW, False) is None
        assert plan_sync_referral(ReferralPolicy.RED_TRIAGE, None, self.YELLOW_REFERRED, False) is None


class TestReferralSideEffect:
    """Referrals opened by sync"""

    def test_red_session_opens_one_referral(self, engine_with_policy, session_factory, event_bus):
        """Red triage opens a pending GP referral once"""
        engine = engine_with_policy(ReferralPolicy.ALL)

        engine.upsert(session_doc(triage="red"))
        engine.upsert(session_doc(_rev="2-b", updatedAt=T2, triage="red"))

        referral = fetch_one(session_factory, Referral)
        assert referral.source == "sync"
        assert referral.status == "pending"
        assert referral.priority == "red"
        assert referral.assigned_to_role == "gp"
        assert event_bus.names().count("referral.created") == 1

    def test_escalation_opens_referral(self, engine_with_policy, session_factory):
        """Green then red"""
        engine = engine_with_policy(ReferralPolicy.RED_TRIAGE)

        engine.upsert(session_doc(triage="green"))
        assert fetch_all(session_factory, Referral) == []

        engine.upsert(session_doc(_rev="2-b", updatedAt=T2, triage="red"))
        assert len(fetch_all(session_factory, Referral)) == 1

    def test_disabled_policy(self, sync_engine, session_factory):
        """No referral when the side effect is disabled"""
        sync_engine.upsert(session_doc(triage="red"))
        assert fetch_all(session_factory, Referral) == []

    def test_reported_referred_state(self, engine_with_policy, session_factory):
        """A client-reported REFERRED opens a referral"""
        engine = engine_with_policy(ReferralPolicy.WORKFLOW_REFERRED)

        engine.upsert(session_doc(triage="yellow", workflowState="REFERRED", workflowStateUpdatedAt=T1))

        referral = fetch_one(session_factory, Referral)
        assert referral.priority == "yellow"
        assert referral.source == "sync"

    def test_failed_side_effect_rolls_back_document(self, engine_with_policy, session_factory, event_bus, monkeypatch):
        """The session and its referral commit together or not at all"""
        def broken(*args, **kwargs):
            raise RuntimeError("referral store unavailable")

        monkeypatch.setattr("app.modules.sync_engine.open_referral", broken)
        engine = engine_with_policy(ReferralPolicy.ALL)

        assert engine.upsert(session_doc(triage="red")) == UpsertOutcome.ERROR
        assert fetch_all(session_factory, ClinicalSession) == []
        assert event_bus.published == []
