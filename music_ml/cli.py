"""Command line entry point: one subcommand per pipeline stage."""

import argparse
import logging
import os
import sys
from typing import List, Optional

from .charts import write_report
from .config import DEFAULT_FAMILIES, DEFAULT_SEED, PipelineConfig
from .errors import MusicModelError, PipelineError
from .pipeline import (
    run_pipeline, stage_clean, stage_recipe, stage_split, stage_tune,
)
from .storage import ArtifactStore, tuned_key

logger = logging.getLogger('music_ml')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='music-ml',
        description='Tune and compare regression models of track popularity.'
    )
    parser.add_argument('--data', default='data/unprocessed/data.csv', help='raw track CSV')
    parser.add_argument('--artifacts', default='model_info', help='directory for stage artifacts')
    parser.add_argument('--reports', default='reports', help='directory for the HTML report')
    parser.add_argument('--seed', type=int, default=DEFAULT_SEED)
    parser.add_argument('--n-jobs', type=int, default=1, help='parallel workers for tuning (-1 = all cores)')
    parser.add_argument('--levels', type=int, default=5, help='grid levels per hyperparameter')
    parser.add_argument('--timeout', type=float, default=None, help='abort a sweep after this many seconds')
    parser.add_argument('--force', action='store_true', help='recompute instead of loading saved artifacts')
    parser.add_argument('-v', '--verbose', action='store_true')

    sub = parser.add_subparsers(dest='command', required=True)
    sub.add_parser('clean', help='load and clean the raw data')
    sub.add_parser('split', help='train/test split and resampling folds')
    sub.add_parser('recipe', help='define and check the feature recipe')
    tune_parser = sub.add_parser('tune', help='grid-tune one model family')
    tune_parser.add_argument('--family', choices=DEFAULT_FAMILIES, required=True)
    sub.add_parser('assess', help='select the winner, refit and score on the test set')
    run_parser = sub.add_parser('run', help='run every stage')
    run_parser.add_argument('--families', nargs='+', choices=DEFAULT_FAMILIES, default=list(DEFAULT_FAMILIES))
    return parser


def _config(args) -> PipelineConfig:
    config = PipelineConfig(
        data_path=args.data,
        artifact_dir=args.artifacts,
        report_dir=args.reports,
        seed=args.seed,
        n_jobs=args.n_jobs,
        levels=args.levels,
        timeout_seconds=args.timeout,
    )
    if getattr(args, 'families', None):
        config.families = tuple(args.families)
    config.validate()
    return config


def _report(config: PipelineConfig, store: ArtifactStore, report) -> str:
    results = [store.load(tuned_key(name)) for name in config.families]
    path = os.path.join(config.report_dir, 'model_assessment.html')
    return write_report(
        path, results, report.families, str(report.winner.config),
        report.test_metrics, report.importances, metric=config.metric,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    try:
        config = _config(args)
        store = ArtifactStore(config.artifact_dir)

        if args.command == 'clean':
            stage_clean(config, store, force=args.force)
        elif args.command == 'split':
            stage_split(config, store, stage_clean(config, store), force=args.force)
        elif args.command == 'recipe':
            stage_recipe(config, store, force=args.force)
        elif args.command == 'tune':
            stage_tune(config, store, args.family, force=args.force)
        else:
            if args.command == 'assess':
                missing = [name for name in config.families if not store.exists(tuned_key(name))]
                if missing:
                    logger.error("No tuning results for %s; run 'tune' first", ', '.join(missing))
                    return 1
            report = run_pipeline(config, store, force=args.force and args.command == 'run')
            for line in report.summary_lines():
                print(line)
            print(f"Report written to {_report(config, store, report)}")
    except PipelineError as e:
        logger.error("%s", e)
        return 1
    except MusicModelError as e:
        logger.error("Configuration or data error: %s", e)
        return 2
    except FileNotFoundError as e:
        logger.error("%s; run the earlier stages first", e)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
