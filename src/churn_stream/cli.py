"""
churn-stream command line
=========================

    churn-stream produce --mode streaming --rate 1 --duration 300
    churn-stream produce --mode batch --num-events 100
    churn-stream consume                      # batch: drain input, then exit
    churn-stream consume --continuous --poll-interval 5
    churn-stream topics create|delete|flush|cleanup|list|status
    churn-stream analytics [--window N] [--json]

Settings come from the environment (KAFKA_*, PRODUCER_*, CONSUMER_*, RETRY_*,
MODEL_*) and `.env`; flags override them.

Exit codes:
    0   success
    1   a message permanently failed, the producer aborted, or an admin
        operation conflicted with an existing topic
    2   broker or model unavailable
"""

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from churn_stream import __version__
from churn_stream.core.cancellation import CancellationToken
from churn_stream.core.config import (
    ConsumerSettings,
    KafkaSettings,
    ModelSettings,
    ProducerMode,
    ProducerSettings,
    Settings,
)
from churn_stream.core.errors import (
    BrokerUnavailableError,
    ModelLoadError,
    TopicSpecConflictError,
)
from churn_stream.core.monitoring import start_metrics_server
from churn_stream.core.retry import RetryPolicy
from churn_stream.serving import ModelLoader, ScoringEngine
from churn_stream.streaming.analytics import ScoredTopicAnalytics
from churn_stream.streaming.broker import KafkaBroker
from churn_stream.streaming.consumer import BatchConsumer, ContinuousConsumer
from churn_stream.streaming.producer import EventProducer, EventSampler
from churn_stream.streaming.schemas import TopicSpec
from churn_stream.streaming.topics import TopicManager, default_topic_specs

logger = logging.getLogger("churn_stream.cli")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_UNAVAILABLE = 2

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

EPILOG = """
Exit codes:
  0  success
  1  message permanently failed, producer aborted, or topic conflict
  2  broker or model unavailable
"""


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT)
    # kafka-python is chatty at INFO
    logging.getLogger("kafka").setLevel(logging.WARNING)


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="churn-stream",
        description="Real-time churn scoring over Kafka",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--bootstrap-servers",
        help="Kafka bootstrap servers (default: KAFKA_BOOTSTRAP_SERVERS or localhost:9092)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        help="Expose Prometheus metrics on this port",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # produce
    produce = subparsers.add_parser("produce", help="Publish customer events to the input topic")
    produce.add_argument("--mode", choices=[m.value for m in ProducerMode], help="streaming or batch")
    produce.add_argument("--rate", type=float, help="Events per second (streaming)")
    produce.add_argument("--duration", type=float, help="Seconds to stream for (streaming)")
    produce.add_argument("--num-events", type=int, help="Number of events (batch)")
    produce.add_argument("--data-path", help="Customer CSV to sample events from")
    produce.add_argument("--seed", type=int, help="Random seed for event sampling")
    produce.set_defaults(handler=cmd_produce)

    # consume
    consume = subparsers.add_parser("consume", help="Score events and publish predictions")
    consume.add_argument(
        "--continuous",
        action="store_true",
        help="Poll until interrupted instead of draining the topic once",
    )
    consume.add_argument("--poll-interval", type=float, help="Seconds between polls (continuous)")
    consume.add_argument("--quiescence-timeout", type=float, help="Idle seconds that end a batch run")
    consume.add_argument("--group-id", help="Consumer group")
    consume.add_argument("--model-uri", help="Explicit MLflow model URI")
    consume.add_argument("--model-version", help="Registered model version (default: latest)")
    consume.set_defaults(handler=cmd_consume)

    # topics
    topics = subparsers.add_parser("topics", help="Topic administration")
    topics.add_argument(
        "action",
        choices=["create", "delete", "flush", "cleanup", "list", "status"],
    )
    topics.add_argument(
        "--keep",
        nargs="*",
        default=[],
        help="Extra topics cleanup must not delete (pipeline topics are always kept)",
    )
    topics.set_defaults(handler=cmd_topics)

    # analytics
    analytics = subparsers.add_parser("analytics", help="Summarize the scored topic")
    analytics.add_argument("--window", type=_positive_int, help="Only the most recent N predictions")
    analytics.add_argument("--json", action="store_true", help="Print the report as JSON")
    analytics.add_argument("--quiescence-timeout", type=float, help="Idle seconds that end the read")
    analytics.set_defaults(handler=cmd_analytics)

    return parser


# =============================================================================
# SETTINGS
# =============================================================================

def _override(settings_cls, current, **values):
    """Re-validate `current` with the non-None flag values applied."""
    updates = {k: v for k, v in values.items() if v is not None}
    if not updates:
        return current
    return settings_cls(**{**current.model_dump(), **updates})


def load_settings(args: argparse.Namespace) -> Settings:
    """Environment settings with command line overrides applied."""
    base = Settings()
    return Settings(
        kafka=_override(KafkaSettings, base.kafka, bootstrap_servers=args.bootstrap_servers),
        producer=_override(
            ProducerSettings,
            base.producer,
            mode=getattr(args, "mode", None),
            rate=getattr(args, "rate", None),
            duration=getattr(args, "duration", None),
            num_events=getattr(args, "num_events", None),
            data_path=getattr(args, "data_path", None),
            seed=getattr(args, "seed", None),
        ),
        consumer=_override(
            ConsumerSettings,
            base.consumer,
            poll_interval=getattr(args, "poll_interval", None),
            quiescence_timeout=getattr(args, "quiescence_timeout", None),
            group_id=getattr(args, "group_id", None),
        ),
        retry=base.retry,
        model=_override(
            ModelSettings,
            base.model,
            uri=getattr(args, "model_uri", None),
            version=getattr(args, "model_version", None),
        ),
    )


def _cancellation_token() -> CancellationToken:
    token = CancellationToken()
    token.install_signal_handlers()
    return token


def _print_json(data: Dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, default=str))


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_produce(args: argparse.Namespace, settings: Settings) -> int:
    config = settings.producer
    policy = RetryPolicy.from_settings(settings.retry)

    with KafkaBroker(settings.kafka) as broker:
        broker.check_connection()
        TopicManager(broker, policy).ensure(
            TopicSpec(settings.kafka.input_topic, settings.kafka.partitions, settings.kafka.replication_factor)
        )

        producer = EventProducer(
            broker,
            settings.kafka.input_topic,
            policy,
            sampler=EventSampler(config.data_path, seed=config.seed),
        )
        if config.mode is ProducerMode.STREAMING:
            report = producer.produce(config.mode, config.rate, duration=config.duration, cancel_token=_cancellation_token())
        else:
            report = producer.produce(config.mode, config.num_events)

    _print_json(report.to_dict())
    return report.exit_code


def cmd_consume(args: argparse.Namespace, settings: Settings) -> int:
    # Refuse to start without a model
    artifact = ModelLoader(settings.model).load()
    engine = ScoringEngine(artifact)
    policy = RetryPolicy.from_settings(settings.retry)

    with KafkaBroker(settings.kafka) as broker:
        broker.check_connection()
        TopicManager(broker, policy).ensure_defaults(settings.kafka)

        if args.continuous:
            consumer = ContinuousConsumer(broker, engine, settings.kafka, settings.consumer, policy)
            summary = consumer.run(_cancellation_token())
        else:
            consumer = BatchConsumer(broker, engine, settings.kafka, settings.consumer, policy)
            summary = consumer.run()

    _print_json(summary.to_dict())
    return summary.exit_code


def cmd_topics(args: argparse.Namespace, settings: Settings) -> int:
    policy = RetryPolicy.from_settings(settings.retry)

    with KafkaBroker(settings.kafka) as broker:
        manager = TopicManager(broker, policy)

        if args.action == "status":
            status = manager.status()
            _print_json(status)
            return EXIT_OK if status["reachable"] else EXIT_UNAVAILABLE

        broker.check_connection()
        pipeline_topics = [spec.name for spec in default_topic_specs(settings.kafka)]

        if args.action == "create":
            _print_json({"created": manager.ensure_defaults(settings.kafka)})
        elif args.action == "delete":
            _print_json({"deleted": {name: manager.delete(name) for name in pipeline_topics}})
        elif args.action == "flush":
            manager.flush_defaults(settings.kafka)
            _print_json({"flushed": pipeline_topics})
        elif args.action == "cleanup":
            _print_json({"deleted": manager.cleanup(pipeline_topics + list(args.keep))})
        elif args.action == "list":
            for name in broker.list_topics():
                print(name)

    return EXIT_OK


def cmd_analytics(args: argparse.Namespace, settings: Settings) -> int:
    with KafkaBroker(settings.kafka) as broker:
        broker.check_connection()
        report = ScoredTopicAnalytics(broker, settings.kafka.scored_topic, settings.consumer).collect(
            window=args.window
        )

    if args.json:
        _print_json(report.to_dict())
    else:
        print(report.format_text())
    return EXIT_FAILURE if report.error else EXIT_OK


# =============================================================================
# ENTRY POINT
# =============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        settings = load_settings(args)
    except ValidationError as e:
        parser.error(f"invalid settings: {e}")

    if args.metrics_port:
        start_metrics_server(args.metrics_port)

    try:
        return args.handler(args, settings)
    except (BrokerUnavailableError, ModelLoadError) as e:
        logger.error(f"{e.error_code}: {e.message}")
        return EXIT_UNAVAILABLE
    except TopicSpecConflictError as e:
        logger.error(f"{e.error_code}: {e.message} {e.details}")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
