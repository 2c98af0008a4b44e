"""End-to-end tests: stage sequencing, resumability, storage, report and CLI."""

import os
import shutil
import tempfile
import unittest

from music_ml.charts import create_feature_importance_chart, create_tuning_chart
from music_ml.cli import main
from music_ml.config import PipelineConfig
from music_ml.errors import InvalidFractionError, PipelineError
from music_ml.pipeline import run_pipeline
from music_ml.storage import ArtifactStore, tuned_key
from tests.helpers import make_raw_tracks


class ArtifactStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.store = ArtifactStore(os.path.join(self.tmp, 'model_info'))

    def tearDown(self):
        shutil.rmtree(self.tmp)

    def test_save_load_and_keys(self):
        self.assertEqual(self.store.keys(), [])
        self.store.save({'rmse': 11.8}, 'test_metrics')
        self.assertTrue(self.store.exists('test_metrics'))
        self.assertEqual(self.store.load('test_metrics'), {'rmse': 11.8})
        self.assertEqual(self.store.keys(), ['test_metrics'])

    def test_artifacts_remember_their_settings(self):
        self.store.save([1, 2], 'music_folds', {'seed': 123, 'v': 5})
        self.assertEqual(self.store.settings('music_folds'), {'seed': 123, 'v': 5})
        self.assertTrue(self.store.is_current('music_folds', {'seed': 123, 'v': 5}))
        self.assertFalse(self.store.is_current('music_folds', {'seed': 7, 'v': 5}))
        self.assertFalse(self.store.is_current('music_split', {'seed': 123, 'v': 5}))

    def test_missing_and_invalid_keys(self):
        with self.assertRaises(FileNotFoundError):
            self.store.load('music')
        with self.assertRaises(ValueError):
            self.store.path('../music')


class PipelineTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.data_path = os.path.join(self.tmp, 'data.csv')
        make_raw_tracks(260, seed=21).to_csv(self.data_path, index=False)
        self.config = PipelineConfig(
            data_path=self.data_path,
            artifact_dir=os.path.join(self.tmp, 'model_info'),
            report_dir=os.path.join(self.tmp, 'reports'),
            v=3,
            repeats=1,
            levels=2,
            families=('elastic_net', 'nearest_neighbor', 'random_forest'),
            engine_args={'random_forest': {'n_estimators': 10}},
        )

    def tearDown(self):
        shutil.rmtree(self.tmp)

    def test_full_run(self):
        report = run_pipeline(self.config)

        self.assertEqual(list(report.stages), ['clean', 'split', 'recipe', 'tune', 'select', 'finalize'])
        self.assertEqual([f['family'] for f in report.families],
                         ['elastic_net', 'nearest_neighbor', 'random_forest'])
        best = min(f['best_score'] for f in report.families)
        self.assertAlmostEqual(report.winner.score, best)
        self.assertEqual(set(report.test_metrics), {'rmse', 'rsq'})
        self.assertTrue(report.importances)
        self.assertFalse(report.partial)
        self.assertTrue(any(line.startswith('Winner:') for line in report.summary_lines()))

        store = ArtifactStore(self.config.artifact_dir)
        for key in ('music', 'music_split', 'music_train', 'music_test', 'music_folds', 'music_rec',
                    'final_model', 'test_metrics', tuned_key('elastic_net')):
            self.assertTrue(store.exists(key), key)

        folds = store.load('music_folds')
        self.assertEqual(len(folds), 3)
        self.assertEqual(store.load(tuned_key('random_forest')).n_cells, 4 * 3)

    def test_second_run_reuses_saved_tuning(self):
        first = run_pipeline(self.config)
        store = ArtifactStore(self.config.artifact_dir)
        path = store.path(tuned_key('elastic_net'))
        mtime = os.path.getmtime(path)

        second = run_pipeline(self.config)
        self.assertEqual(os.path.getmtime(path), mtime)
        self.assertEqual(first.winner.config, second.winner.config)
        self.assertEqual(first.test_metrics, second.test_metrics)

    def test_changed_settings_are_not_served_from_old_artifacts(self):
        self.config.families = ('elastic_net',)
        run_pipeline(self.config)
        store = ArtifactStore(self.config.artifact_dir)
        self.assertEqual(len(store.load(tuned_key('elastic_net')).configs), 4)
        split_mtime = os.path.getmtime(store.path('music_split'))

        # A finer grid reruns the sweep but keeps the split
        self.config.levels = 3
        run_pipeline(self.config)
        self.assertEqual(len(store.load(tuned_key('elastic_net')).configs), 9)
        self.assertEqual(os.path.getmtime(store.path('music_split')), split_mtime)

        # A new seed redraws the split and the folds
        self.config.seed = 7
        run_pipeline(self.config)
        self.assertEqual(store.load('music_folds').seed, 7)
        self.assertEqual(store.settings('music_split')['seed'], 7)
        self.assertEqual(store.settings(tuned_key('elastic_net'))['seed'], 7)

    def test_family_without_valid_results_is_left_out(self):
        self.config.families = ('elastic_net', 'nearest_neighbor')
        self.config.engine_args = {'nearest_neighbor': {'weights': 'no-such-weighting'}}
        report = run_pipeline(self.config)

        self.assertEqual(report.winner.family, 'elastic_net')
        neighbors = report.families[1]
        self.assertIsNone(neighbors['best_config'])
        self.assertEqual(neighbors['n_failed'], neighbors['n_cells'])
        self.assertTrue(report.partial)
        self.assertEqual(report.cells_failed, neighbors['n_cells'])
        self.assertTrue(any('no valid results' in line for line in report.summary_lines()))

    def test_no_valid_family_at_all_is_fatal(self):
        self.config.families = ('nearest_neighbor',)
        self.config.engine_args = {'nearest_neighbor': {'weights': 'no-such-weighting'}}
        with self.assertRaises(PipelineError) as ctx:
            run_pipeline(self.config)
        self.assertEqual(ctx.exception.stage, 'select')
        self.assertEqual(ctx.exception.cells_affected, 2 * 3)
        self.assertTrue(ctx.exception.partial)

    def test_failing_stage_is_named(self):
        self.config.data_path = os.path.join(self.tmp, 'missing.csv')
        with self.assertRaises(PipelineError) as ctx:
            run_pipeline(self.config)
        self.assertEqual(ctx.exception.stage, 'clean')
        self.assertIsInstance(ctx.exception.cause, FileNotFoundError)

    def test_configuration_is_checked_first(self):
        self.config.train_fraction = 1.2
        with self.assertRaises(PipelineError) as ctx:
            run_pipeline(self.config)
        self.assertEqual(ctx.exception.stage, 'config')
        self.assertIsInstance(ctx.exception.cause, InvalidFractionError)
        self.assertFalse(os.path.exists(self.config.artifact_dir))

    def test_charts_render_from_results(self):
        run_pipeline(self.config)
        store = ArtifactStore(self.config.artifact_dir)
        chart = create_tuning_chart(store.load(tuned_key('random_forest')), 'rmse')
        self.assertIn('tuning_random_forest', chart)
        self.assertIn('chart-placeholder', create_feature_importance_chart({}, 'none'))

    def test_cli_run_writes_report(self):
        code = main([
            '--data', self.data_path,
            '--artifacts', self.config.artifact_dir,
            '--reports', self.config.report_dir,
            '--levels', '2',
            'run', '--families', 'elastic_net',
        ])
        self.assertEqual(code, 0)
        self.assertTrue(os.path.exists(os.path.join(self.config.report_dir, 'model_assessment.html')))

    def test_cli_assess_needs_tuning_first(self):
        code = main(['--artifacts', self.config.artifact_dir, 'assess'])
        self.assertEqual(code, 1)


if __name__ == '__main__':
    unittest.main()
