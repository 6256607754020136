from __future__ import annotations

import threading
import unittest

from reconciliation.services.sync_orchestrator import (
    TRIGGER_COMPLETED,
    TRIGGER_FAILED,
    TRIGGER_QUEUED,
    SyncOrchestrator,
)


class SyncOrchestratorTests(unittest.TestCase):
    def test_triggers_during_a_run_coalesce_into_one_rerun(self) -> None:
        started = threading.Event()
        release = threading.Event()
        spawned: list[str] = []

        def job() -> dict:
            started.set()
            release.wait(5)
            return {'processed': 0}

        orchestrator = SyncOrchestrator(job, spawn=lambda _target, name: spawned.append(name))
        results = []
        runner = threading.Thread(target=lambda: results.append(orchestrator.trigger('scheduler')))
        runner.start()
        self.assertTrue(started.wait(5))

        queued = [orchestrator.trigger(source) for source in ('webhook', 'webhook', 'manual')]
        self.assertTrue(all(result.status == TRIGGER_QUEUED for result in queued))
        self.assertTrue(orchestrator.status()['queued'])

        release.set()
        runner.join(5)

        self.assertEqual(results[0].status, TRIGGER_COMPLETED)
        self.assertEqual(spawned, ['queued-from-manual'])
        status = orchestrator.status()
        self.assertFalse(status['running'])
        self.assertFalse(status['queued'])
        self.assertEqual(status['run_id'], 1)

    def test_idle_trigger_runs_without_rerun(self) -> None:
        spawned: list[str] = []
        orchestrator = SyncOrchestrator(lambda: {'ok': True}, spawn=lambda _target, name: spawned.append(name))

        result = orchestrator.trigger('cli')

        self.assertEqual(result.status, TRIGGER_COMPLETED)
        self.assertEqual(result.result, {'ok': True})
        self.assertEqual(spawned, [])

    def test_failed_job_releases_the_slot(self) -> None:
        def job() -> dict:
            raise RuntimeError('platform down')

        orchestrator = SyncOrchestrator(job, spawn=lambda _target, _name: None)

        result = orchestrator.trigger('cli')

        self.assertEqual(result.status, TRIGGER_FAILED)
        self.assertEqual(result.error, 'platform down')
        self.assertFalse(orchestrator.status()['running'])
        self.assertEqual(orchestrator.status()['last_error'], 'platform down')
        self.assertEqual(orchestrator.trigger('cli').run_id, 2)

    def test_spawned_rerun_runs_the_job_again(self) -> None:
        calls: list[str] = []

        def job() -> dict:
            calls.append('run')
            if len(calls) == 1:
                orchestrator.request_rerun('webhook')
            return {}

        orchestrator = SyncOrchestrator(job, spawn=lambda target, _name: target())

        orchestrator.trigger('scheduler')

        self.assertEqual(calls, ['run', 'run'])
        status = orchestrator.status()
        self.assertEqual(status['run_id'], 2)
        self.assertEqual(status['last_source'], 'queued-from-webhook')


if __name__ == '__main__':
    unittest.main()
