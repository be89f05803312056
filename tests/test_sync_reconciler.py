"""Tests for two-way reconciliation.

This module verifies:
- A pass pushes every pending row in parent-before-child order, then pulls
- A second pass with no intervening changes moves nothing
- Evidence files are uploaded once, under owner-scoped keys
- Pulls never overwrite rows with unpushed local edits
- Last-write-wins on the server timestamp for everything else
- One failing row never blocks the others, and rejections are parked
- Losing connectivity aborts the pass without losing data
- Only one pass runs at a time, and reconnects during a pass are coalesced
"""

import asyncio
import logging
import os

from tests.conftest import OWNER_ID, make_claim, make_photo, make_voice_note, write_evidence
from vshield.domain import NewAttachment, NewProject, ProjectUpdate, SyncState, TranscriptionStatus
from vshield.errors import RemoteRejectedError
from vshield.hashing import digest_bytes
from vshield.storage.sqlite import SQLiteRecordStore
from vshield.sync.connectivity import ConnectivityMonitor
from vshield.sync.reconciler import CONNECTIVITY_LOST, NO_CONNECTIVITY, SyncReconciler
from vshield.sync.tables import SYNC_TABLES

TABLE_ORDER = [t.name for t in SYNC_TABLES]


def _remote_project(project_id: str, owner_id: str = OWNER_ID, **overrides) -> dict:
    row = {
        "id": project_id,
        "name": "Remote project",
        "client": "Harbour Authority",
        "reference": "",
        "is_active": True,
        "created_at": "2025-03-01T00:00:00+00:00",
        "updated_at": "2025-03-01T00:00:00+00:00",
        "owner_id": owner_id,
    }
    row.update(overrides)
    return row


def _remote_claim(claim_id: str, project_id: str, sequence_number: int = 1, **overrides) -> dict:
    row = {
        "id": claim_id,
        "project_id": project_id,
        "sequence_number": sequence_number,
        "claim_code": f"VAR-{sequence_number:03d}",
        "title": "Captured on another device",
        "description": "",
        "instruction_source": "site_instruction",
        "estimated_value": 50_000,
        "status": "submitted",
        "captured_at": "2025-03-02T10:00:00+00:00",
        "created_at": "2025-03-02T10:00:00+00:00",
        "updated_at": "2025-03-02T10:05:00+00:00",
    }
    row.update(overrides)
    return row


async def _claim_with_evidence(store, project, evidence_dir):
    photo = write_evidence(evidence_dir, "pit.jpg", b"pit photo")
    voice = write_evidence(evidence_dir, "note.m4a", b"voice note")
    detail = await store.create_claim(
        make_claim(project.id),
        photos=[make_photo(photo, b"pit photo")],
        voice_notes=[make_voice_note(voice, b"voice note")],
    )
    doc = write_evidence(evidence_dir, "SI-014.pdf", b"%PDF-1.7")
    attachment = await store.add_attachment(
        detail.id,
        NewAttachment(local_path=doc, digest=digest_bytes(b"%PDF-1.7"), file_name="SI-014.pdf", mime_type="application/pdf"),
    )
    return await store.get_claim_detail(detail.id), attachment


class TestPush:
    """Tests for the push half of a pass."""

    async def test_offline_pass_does_nothing(self, reconciler, monitor, remote, project):
        monitor.set_connected(False)
        result = await reconciler.reconcile()
        assert not result.success
        assert result.reason == NO_CONNECTIVITY
        assert remote.upserts == []

    async def test_pushes_all_pending_rows_in_order(self, reconciler, store, remote, project, evidence_dir):
        detail, _ = await _claim_with_evidence(store, project, evidence_dir)

        result = await reconciler.reconcile()

        assert result.success
        assert result.pushed == 6
        assert result.failed == 0
        assert await store.pending_sync_count() == 0
        order = [TABLE_ORDER.index(table) for table, _ in remote.upserts]
        assert order == sorted(order)
        assert remote.tables["projects"][project.id]["owner_id"] == OWNER_ID
        assert remote.tables["claims"][detail.id]["claim_code"] == "VAR-001"
        for rows in remote.tables.values():
            for row in rows.values():
                assert "sync_status" not in row
                assert "local_path" not in row

    async def test_second_pass_is_a_no_op(self, reconciler, store, remote, project, evidence_dir):
        await _claim_with_evidence(store, project, evidence_dir)
        await reconciler.reconcile()
        upserts = len(remote.upserts)

        result = await reconciler.reconcile()

        assert (result.pushed, result.pulled, result.skipped) == (0, 0, 0)
        assert len(remote.upserts) == upserts

    async def test_adopts_server_timestamp(self, reconciler, store, remote, project):
        await reconciler.reconcile()
        local = await store.get_project(project.id)
        assert local.sync_status == SyncState.SYNCED
        assert local.updated_at.isoformat(timespec="microseconds") == remote.tables["projects"][project.id]["updated_at"]

    async def test_uploads_evidence_under_owner_keys(self, reconciler, store, remote, project, evidence_dir):
        detail, attachment = await _claim_with_evidence(store, project, evidence_dir)
        photo, voice = detail.photos[0], detail.voice_notes[0]

        await reconciler.reconcile()

        assert remote.uploads == [
            f"{OWNER_ID}/photo/{photo.id}.jpg",
            f"{OWNER_ID}/voice/{voice.id}.m4a",
            f"{OWNER_ID}/document/{attachment.id}.pdf",
        ]
        assert remote.objects[f"{OWNER_ID}/photo/{photo.id}.jpg"] == b"pit photo"
        uploaded = await store.list_photos(detail.id)
        assert uploaded[0].remote_uri == f"evidence/{OWNER_ID}/photo/{photo.id}.jpg"
        assert remote.tables["photo_evidence"][photo.id]["remote_uri"] == uploaded[0].remote_uri

    async def test_file_is_not_uploaded_twice(self, reconciler, store, remote, project, evidence_dir):
        """A row whose upsert failed after its upload keeps the remote URI and is not re-uploaded."""
        path = write_evidence(evidence_dir, "pit.jpg", b"pit photo")
        detail = await store.create_claim(make_claim(project.id), photos=[make_photo(path, b"pit photo")])
        remote.fail_upsert("photo_evidence")

        first = await reconciler.reconcile()
        assert first.failed == 1
        assert len(remote.uploads) == 1

        remote.clear_failures()
        second = await reconciler.reconcile()
        assert second.pushed == 1
        assert len(remote.uploads) == 1
        assert detail.photos[0].id in remote.tables["photo_evidence"]

    async def test_missing_file_pushes_metadata_only(self, reconciler, store, remote, project, evidence_dir, caplog):
        path = write_evidence(evidence_dir, "gone.jpg", b"soon deleted")
        detail = await store.create_claim(make_claim(project.id), photos=[make_photo(path, b"soon deleted")])
        os.remove(path)

        with caplog.at_level(logging.WARNING, logger="vshield"):
            result = await reconciler.reconcile()

        assert result.success
        assert remote.uploads == []
        assert remote.tables["photo_evidence"][detail.photos[0].id]["remote_uri"] is None
        assert "pushing metadata only" in caplog.text

    async def test_unreadable_file_pushes_metadata_only(
        self, reconciler, store, remote, project, evidence_dir, monkeypatch, caplog
    ):
        path = write_evidence(evidence_dir, "locked.jpg", b"no read access")
        detail = await store.create_claim(make_claim(project.id), photos=[make_photo(path, b"no read access")])

        async def unreadable(key, local_path, content_type):
            raise PermissionError(13, "Permission denied", local_path)

        monkeypatch.setattr(remote, "upload", unreadable)
        with caplog.at_level(logging.WARNING, logger="vshield"):
            result = await reconciler.reconcile()

        assert result.success
        assert result.failed == 0
        photo_id = detail.photos[0].id
        assert remote.tables["photo_evidence"][photo_id]["remote_uri"] is None
        assert (await store.get_claim_detail(detail.id)).photos[0].remote_uri is None
        assert "pushing metadata only" in caplog.text


class TestPull:
    """Tests for the pull half of a pass."""

    async def test_inserts_rows_from_other_devices(self, reconciler, store, remote):
        remote.put_row("projects", _remote_project("p-remote"))
        remote.put_row("projects", _remote_project("p-other-owner", owner_id="someone-else"))
        remote.put_row("claims", _remote_claim("c-remote", "p-remote"))
        remote.put_row(
            "photo_evidence",
            {
                "id": "ph-remote",
                "claim_id": "c-remote",
                "remote_uri": f"evidence/{OWNER_ID}/photo/ph-remote.jpg",
                "digest": digest_bytes(b"remote photo"),
                "captured_at": "2025-03-02T10:00:00+00:00",
            },
        )

        result = await reconciler.reconcile()

        assert result.success
        assert result.pulled == 3
        assert await store.get_project("p-other-owner") is None
        detail = await store.get_claim_detail("c-remote")
        assert detail.sync_status == SyncState.SYNCED
        assert detail.project_name == "Remote project"
        assert detail.photos[0].local_path is None
        report = await store.verify_claim_integrity("c-remote")
        assert report.artifacts[0].reason == "no local copy on this device"

    async def test_pending_local_row_is_never_overwritten(self, reconciler, store, remote, project):
        remote.fail_upsert("projects")
        remote.put_row("projects", _remote_project(project.id, name="Renamed elsewhere", updated_at="2030-01-01T00:00:00+00:00"))

        result = await reconciler.reconcile()

        assert result.failed == 1
        assert result.skipped == 1
        local = await store.get_project(project.id)
        assert local.name == project.name
        assert local.sync_status == SyncState.PENDING

    async def test_newer_remote_edit_wins(self, reconciler, store, remote, project):
        await reconciler.reconcile()
        remote.put_row("projects", _remote_project(project.id, name="Renamed elsewhere", updated_at="2030-01-01T00:00:00+00:00"))

        result = await reconciler.reconcile()

        assert result.pulled == 1
        local = await store.get_project(project.id)
        assert local.name == "Renamed elsewhere"
        assert local.sync_status == SyncState.SYNCED

    async def test_older_remote_copy_is_ignored(self, reconciler, store, remote, project):
        await reconciler.reconcile()
        remote.put_row("projects", _remote_project(project.id, name="Stale copy", updated_at="2020-01-01T00:00:00+00:00"))

        result = await reconciler.reconcile()

        assert result.pulled == 0
        assert (await store.get_project(project.id)).name == project.name

    async def test_local_edit_is_pushed_over_remote(self, reconciler, store, remote, project):
        await reconciler.reconcile()
        await store.update_project(project.id, ProjectUpdate(name="Dock 4 Stage 2"))

        result = await reconciler.reconcile()

        assert result.pushed == 1
        assert remote.tables["projects"][project.id]["name"] == "Dock 4 Stage 2"
        assert (await store.get_project(project.id)).sync_status == SyncState.SYNCED

    async def test_duplicate_sequence_is_reported(self, reconciler, store, remote, project):
        claim = await store.create_claim(make_claim(project.id))
        await reconciler.reconcile()
        remote.put_row("claims", _remote_claim("c-clash", project.id, sequence_number=claim.sequence_number))

        result = await reconciler.reconcile()

        assert result.skipped == 1
        assert any("c-clash" in error for error in result.errors)
        assert await store.get_claim("c-clash") is None
        assert [c.id for c in await store.list_claims(project.id)] == [claim.id]

    async def test_malformed_timestamp_is_skipped(self, reconciler, store, remote):
        """A remote row with an unparseable timestamp is skipped and the pass carries on."""
        remote.put_row("projects", _remote_project("p-bad", updated_at="not-a-timestamp"))
        remote.put_row("projects", _remote_project("p-good"))

        result = await reconciler.reconcile()

        assert result.pulled == 1
        assert result.skipped == 1
        assert any("p-bad" in error for error in result.errors)
        assert await store.get_project("p-bad") is None
        assert (await store.get_project("p-good")).sync_status == SyncState.SYNCED

    async def test_adopts_transcript_from_another_device(self, reconciler, store, remote, project, evidence_dir):
        path = write_evidence(evidence_dir, "note.m4a", b"voice note")
        detail = await store.create_claim(make_claim(project.id), voice_notes=[make_voice_note(path, b"voice note")])
        note = detail.voice_notes[0]
        await reconciler.reconcile()
        remote.tables["voice_notes"][note.id].update(
            transcription="Superintendent asked for the pit to move two metres north",
            transcription_status="complete",
        )

        result = await reconciler.reconcile()

        assert result.pulled == 1
        merged = await store.get_voice_note(note.id)
        assert merged.transcription_status == TranscriptionStatus.COMPLETE
        assert merged.transcription.startswith("Superintendent")
        assert merged.local_path == path

    async def test_fetch_failure_marks_pass_unsuccessful(self, reconciler, store, remote, project):
        remote.fail_fetch("claims")

        result = await reconciler.reconcile()

        assert not result.success
        assert result.reason is None
        assert result.pushed == 1
        assert any(error.startswith("fetch claims") for error in result.errors)


class TestFailures:
    """Tests for per-row failure isolation."""

    async def test_transient_failure_leaves_row_pending(self, reconciler, store, remote, project):
        stuck = await store.create_claim(make_claim(project.id, title="Stuck"))
        fine = await store.create_claim(make_claim(project.id, title="Fine"))
        remote.fail_upsert("claims", stuck.id)

        first = await reconciler.reconcile()

        assert first.failed == 1
        assert fine.id in remote.tables["claims"]
        assert stuck.id not in remote.tables["claims"]
        assert (await store.get_claim(stuck.id)).sync_status == SyncState.PENDING
        assert any(stuck.id in error for error in first.errors)

        remote.clear_failures()
        second = await reconciler.reconcile()
        assert second.pushed == 1
        assert await store.pending_sync_count() == 0

    async def test_rejected_row_is_parked_until_requeued(self, reconciler, store, remote, project):
        claim = await store.create_claim(make_claim(project.id))
        remote.fail_upsert("claims", claim.id, RemoteRejectedError("violates check constraint", status_code=400))

        first = await reconciler.reconcile()
        assert first.failed == 1
        assert (await store.sync_backlog()).failed == {"claims": 1}

        remote.clear_failures()
        second = await reconciler.reconcile()
        assert second.pushed == 0
        assert claim.id not in remote.tables["claims"]

        assert await store.requeue_failed() == 1
        third = await reconciler.reconcile()
        assert third.pushed == 1
        assert claim.id in remote.tables["claims"]

    async def test_connectivity_lost_mid_pass(self, reconciler, store, remote, monitor, project):
        await store.create_claim(make_claim(project.id))
        await store.create_claim(make_claim(project.id))

        def drop_after_first_claim(table, row):
            if table == "claims":
                monitor.set_connected(False)

        remote.before_upsert = drop_after_first_claim
        result = await reconciler.reconcile()

        assert not result.success
        assert result.reason == CONNECTIVITY_LOST
        assert result.pushed == 2
        assert await store.pending_sync_count() == 3

        remote.before_upsert = None
        monitor.set_connected(True)
        resumed = await reconciler.reconcile()
        assert resumed.success
        assert resumed.pushed == 3
        assert await store.pending_sync_count() == 0


class TestScheduling:
    """Tests for single-flight passes and connectivity triggers."""

    async def test_concurrent_callers_share_one_pass(self, reconciler, store, remote, project):
        await store.create_claim(make_claim(project.id))

        first, second = await asyncio.gather(reconciler.reconcile(), reconciler.reconcile())

        assert first == second
        assert len(remote.upserts) == len(set(remote.upserts)) == 3

    async def test_reconnect_triggers_pass(self, store, remote, project):
        offline = ConnectivityMonitor(connected=False)
        reconciler = SyncReconciler(store, remote)
        unbind = reconciler.bind(offline)

        offline.set_connected(True)
        await reconciler.wait_idle()
        assert project.id in remote.tables["projects"]

        unbind()
        later = await store.create_project(NewProject(name="Later", client="X"))
        offline.set_connected(False)
        offline.set_connected(True)
        await reconciler.wait_idle()
        assert later.id not in remote.tables["projects"]

    def test_reconnect_outside_event_loop_is_ignored(self, remote, caplog):
        monitor = ConnectivityMonitor(connected=False)
        reconciler = SyncReconciler(SQLiteRecordStore(), remote)
        reconciler.bind(monitor)

        with caplog.at_level(logging.WARNING, logger="vshield"):
            monitor.set_connected(True)

        assert monitor.is_connected
        assert not reconciler.is_running
        assert "reconciliation not started" in caplog.text

    async def test_reconnect_during_pass_runs_one_more(self, reconciler, monitor, monkeypatch, project):
        passes = []
        original = reconciler._pass

        async def counting_pass():
            passes.append(len(passes))
            return await original()

        monkeypatch.setattr(reconciler, "_pass", counting_pass)
        reconciler.bind(monitor)

        running = asyncio.create_task(reconciler.reconcile())
        await asyncio.sleep(0)
        assert reconciler.is_running
        monitor.set_connected(False)
        monitor.set_connected(True)
        monitor.set_connected(False)
        monitor.set_connected(True)

        result = await running
        await reconciler.wait_idle()

        assert len(passes) == 2
        assert result.success
