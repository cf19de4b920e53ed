#!/usr/bin/env python3
"""
Tests for the in-memory job registry: transitions, chunk progress, ownership, sweep.
"""

import sys
import threading
from datetime import timedelta
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from transcriber.core.constants import JobStatus, ChunkState, ProcessingMode
from transcriber.core.error_codes import (
    InvalidInput, InvalidTransition, InvalidState, JobNotFound,
)
from transcriber.core.job_store import JobStore
from transcriber.core.models import (
    ChunkDescriptor, JobConfig, JobMetadata, Utterance, utc_now,
)


def _chunks(n):
    return [ChunkDescriptor(index=i, start_time=i * 180.0, end_time=(i + 1) * 180.0,
                            duration=180.0, hash=f"h{i}", file_path=Path(f"/tmp/c{i}.mp3"))
            for i in range(n)]


class JobStoreTestCase(unittest.TestCase):

    def setUp(self):
        self.store = JobStore()

    def new_job(self, user_id=None, n_chunks=None):
        job = self.store.create_job(JobConfig(mode=ProcessingMode.BALANCED),
                                    JobMetadata(filename="talk.mp3", file_size=1024),
                                    user_id=user_id)
        if n_chunks is not None:
            self.store.update_status(job.id, JobStatus.CHUNKING)
            self.store.initialize_chunks(job.id, _chunks(n_chunks))
            self.store.update_status(job.id, JobStatus.TRANSCRIBING)
        return job.id


class TestJobLifecycle(JobStoreTestCase):

    def test_create_job(self):
        job_id = self.new_job()
        job = self.store.get_job(job_id)
        self.assertEqual(job.status, JobStatus.PENDING)
        self.assertEqual(job.progress, 0)
        self.assertIsNone(job.transcript)

    def test_create_requires_positive_size(self):
        with self.assertRaises(InvalidInput):
            self.store.create_job(JobConfig(), JobMetadata(filename="a.mp3", file_size=0))

    def test_get_missing_job(self):
        self.assertIsNone(self.store.get_job("nope"))
        with self.assertRaises(JobNotFound):
            self.store.update_status("nope", JobStatus.CHUNKING)

    def test_forward_path(self):
        job_id = self.new_job(n_chunks=1)
        self.store.update_chunk_status(job_id, 0, state=ChunkState.COMPLETED, transcript="hi")
        self.store.update_status(job_id, JobStatus.ASSEMBLING)
        self.store.update_status(job_id, JobStatus.COMPLETED)
        job = self.store.get_job(job_id)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertIsNotNone(job.metadata.completed_at)
        self.assertIsNotNone(job.metadata.processing_time)

    def test_whole_file_path(self):
        job_id = self.new_job()
        self.store.update_status(job_id, JobStatus.TRANSCRIBING)
        self.store.update_status(job_id, JobStatus.COMPLETED)
        self.assertEqual(self.store.get_job(job_id).progress, 100)

    def test_backward_transition_rejected(self):
        job_id = self.new_job(n_chunks=1)
        self.store.update_status(job_id, JobStatus.ASSEMBLING)
        self.store.update_status(job_id, JobStatus.COMPLETED)
        with self.assertRaises(InvalidTransition):
            self.store.update_status(job_id, JobStatus.TRANSCRIBING)

    def test_skipping_states_rejected(self):
        job_id = self.new_job()
        with self.assertRaises(InvalidTransition):
            self.store.update_status(job_id, JobStatus.ASSEMBLING)

    def test_failed_requires_error(self):
        job_id = self.new_job()
        with self.assertRaises(InvalidInput):
            self.store.update_status(job_id, JobStatus.FAILED)
        self.store.update_status(job_id, JobStatus.FAILED, error="provider down")
        self.assertEqual(self.store.get_job(job_id).error, "provider down")

    def test_cancel_from_any_non_terminal(self):
        for setup in (None, 2):
            job_id = self.new_job(n_chunks=setup)
            self.store.update_status(job_id, JobStatus.CANCELLED)
            self.assertEqual(self.store.get_status(job_id), JobStatus.CANCELLED)

    def test_terminal_is_final(self):
        job_id = self.new_job()
        self.store.update_status(job_id, JobStatus.CANCELLED)
        with self.assertRaises(InvalidTransition):
            self.store.update_status(job_id, JobStatus.FAILED, error="late")

    def test_unknown_status(self):
        job_id = self.new_job()
        with self.assertRaises(InvalidInput):
            self.store.update_status(job_id, "paused")

    def test_get_job_is_a_snapshot(self):
        job_id = self.new_job()
        snapshot = self.store.get_job(job_id)
        snapshot.status = JobStatus.COMPLETED
        snapshot.metadata.filename = "changed"
        job = self.store.get_job(job_id)
        self.assertEqual(job.status, JobStatus.PENDING)
        self.assertEqual(job.metadata.filename, "talk.mp3")


class TestChunkProgress(JobStoreTestCase):

    def test_initialize_requires_chunking(self):
        job_id = self.new_job()
        with self.assertRaises(InvalidState):
            self.store.initialize_chunks(job_id, _chunks(2))

    def test_initialize_chunks(self):
        job_id = self.new_job(n_chunks=3)
        job = self.store.get_job(job_id)
        self.assertEqual(job.metadata.total_chunks, 3)
        self.assertEqual([s.state for s in job.chunk_statuses], [ChunkState.PENDING] * 3)

    def test_progress_tracks_completed(self):
        job_id = self.new_job(n_chunks=3)
        seen = []
        for i in range(3):
            self.store.update_chunk_status(job_id, i, state=ChunkState.IN_PROGRESS)
            self.store.update_chunk_status(job_id, i, state=ChunkState.COMPLETED, transcript=str(i))
            job = self.store.get_job(job_id)
            seen.append((job.completed_chunks, job.progress))
        self.assertEqual(seen, [(1, 33), (2, 67), (3, 100)])

    def test_progress_100_only_when_all_complete(self):
        job_id = self.new_job(n_chunks=200)
        for i in range(199):
            self.store.update_chunk_status(job_id, i, state=ChunkState.COMPLETED)
        self.assertEqual(self.store.get_job(job_id).progress, 99)
        self.store.update_chunk_status(job_id, 199, state=ChunkState.COMPLETED)
        self.assertEqual(self.store.get_job(job_id).progress, 100)

    def test_completed_chunk_cannot_regress(self):
        job_id = self.new_job(n_chunks=1)
        self.store.update_chunk_status(job_id, 0, state=ChunkState.COMPLETED)
        with self.assertRaises(InvalidTransition):
            self.store.update_chunk_status(job_id, 0, state=ChunkState.RETRYING)

    def test_out_of_range_index(self):
        job_id = self.new_job(n_chunks=2)
        with self.assertRaises(InvalidInput):
            self.store.update_chunk_status(job_id, 2, state=ChunkState.COMPLETED)
        with self.assertRaises(InvalidInput):
            self.store.update_chunk_status(job_id, -1, state=ChunkState.COMPLETED)

    def test_unknown_fields_and_states(self):
        job_id = self.new_job(n_chunks=1)
        with self.assertRaises(InvalidInput):
            self.store.update_chunk_status(job_id, 0, colour="red")
        with self.assertRaises(InvalidInput):
            self.store.update_chunk_status(job_id, 0, state="exploded")

    def test_partial_merge(self):
        job_id = self.new_job(n_chunks=1)
        self.store.update_chunk_status(job_id, 0, state=ChunkState.RETRYING, retry_count=1, error="x")
        self.store.update_chunk_status(job_id, 0, was_split=True)
        status = self.store.get_job(job_id).chunk_statuses[0]
        self.assertEqual(status.state, ChunkState.RETRYING)
        self.assertEqual(status.retry_count, 1)
        self.assertTrue(status.was_split)

    def test_concurrent_updates(self):
        job_id = self.new_job(n_chunks=100)

        def complete(indices):
            for i in indices:
                self.store.update_chunk_status(job_id, i, state=ChunkState.COMPLETED)
                self.store.record_retry(job_id)

        threads = [threading.Thread(target=complete, args=(range(k, 100, 4),)) for k in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        job = self.store.get_job(job_id)
        self.assertEqual(job.completed_chunks, 100)
        self.assertEqual(job.progress, 100)
        self.assertEqual(job.total_retries, 100)

    def test_counters(self):
        job_id = self.new_job()
        self.assertEqual(self.store.record_retry(job_id), 1)
        self.assertEqual(self.store.record_retry(job_id), 2)
        self.assertEqual(self.store.record_split(job_id), 1)
        self.assertEqual(self.store.get_counters(job_id), (2, 1))


class TestResults(JobStoreTestCase):

    def test_set_transcript_once(self):
        job_id = self.new_job()
        self.store.set_transcript(job_id, "hello")
        self.store.set_transcript(job_id, "hello")
        with self.assertRaises(InvalidState):
            self.store.set_transcript(job_id, "other")

    def test_set_utterances_once(self):
        job_id = self.new_job()
        utterances = [Utterance(speaker="A", text="hi", start=0, end=500)]
        self.store.set_utterances(job_id, utterances)
        self.store.set_utterances(job_id, list(utterances))
        with self.assertRaises(InvalidState):
            self.store.set_utterances(job_id, [])

    def test_update_metadata(self):
        job_id = self.new_job()
        self.store.update_metadata(job_id, duration=12.5)
        self.assertEqual(self.store.get_job(job_id).metadata.duration, 12.5)
        with self.assertRaises(InvalidInput):
            self.store.update_metadata(job_id, created_at=None)


class TestOwnershipAndSweep(JobStoreTestCase):

    def test_owner_matches(self):
        job_id = self.new_job(user_id="u1")
        self.assertTrue(self.store.validate_ownership(job_id, "u1"))
        self.assertFalse(self.store.validate_ownership(job_id, "u2"))
        self.assertFalse(self.store.validate_ownership(job_id, None))

    def test_ownerless_job(self):
        job_id = self.new_job()
        self.assertTrue(self.store.validate_ownership(job_id, "anyone"))
        self.assertTrue(self.store.validate_ownership(job_id, None))

    def test_sweep_expired(self):
        old = self.new_job()
        fresh = self.new_job()
        self.store._jobs[old].metadata.created_at = utc_now() - timedelta(hours=3)

        evicted = self.store.sweep_expired(7200)
        self.assertEqual([j.id for j in evicted], [old])
        self.assertIsNone(self.store.get_job(old))
        self.assertIsNotNone(self.store.get_job(fresh))

    def test_delete_and_list(self):
        job_id = self.new_job()
        self.assertEqual(len(self.store.list_jobs()), 1)
        self.assertTrue(self.store.delete_job(job_id))
        self.assertFalse(self.store.delete_job(job_id))
        self.assertEqual(self.store.list_jobs(), [])

    def test_count_by_status(self):
        self.new_job()
        cancelled = self.new_job()
        self.store.update_status(cancelled, JobStatus.CANCELLED)
        self.assertEqual(self.store.count_by_status(),
                         {JobStatus.PENDING: 1, JobStatus.CANCELLED: 1})


class TestStatusView(JobStoreTestCase):

    def test_status_view(self):
        job_id = self.new_job(n_chunks=2)
        view = self.store.status_view(job_id)
        self.assertEqual(view['status'], JobStatus.TRANSCRIBING)
        self.assertEqual(view['total_chunks'], 2)
        self.assertIsNone(view['estimated_time_remaining'])
        self.assertEqual(view['metadata']['filename'], "talk.mp3")
        self.assertEqual(view['metadata']['mode'], ProcessingMode.BALANCED)

        self.store.update_chunk_status(job_id, 0, state=ChunkState.COMPLETED)
        view = self.store.status_view(job_id)
        self.assertEqual(view['progress'], 50)
        self.assertIsInstance(view['estimated_time_remaining'], int)
        self.assertGreaterEqual(view['estimated_time_remaining'], 0)

    def test_status_view_missing(self):
        self.assertIsNone(self.store.status_view("nope"))


if __name__ == "__main__":
    unittest.main()
