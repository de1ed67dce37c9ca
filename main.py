"""Chronicle Engine — run one player turn from the command line.

    python main.py --session S1 --player p1 "I search the docks for the ritual circle."

Uses the model backend from config/.env unless --echo is given.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from chronicle_engine.config import build_llm, get_config
from chronicle_engine.engine import TurnEngine, TurnValidationError
from chronicle_engine.llm import EchoLLM, LLMError
from chronicle_engine.storage import SessionStore

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")


def setup_logging(level: str = "WARNING") -> None:
    """Configure root logger and quiet noisy third-party loggers."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="[%(name)s] %(levelname)s %(message)s",
        stream=sys.stderr,
        force=True,
    )
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


async def run(args: argparse.Namespace) -> int:
    config = get_config(args.config)
    data_dir = args.data_dir or config.data_dir
    store = SessionStore(data_dir)
    llm = EchoLLM() if args.echo else build_llm(config.llm)
    engine = TurnEngine(store, llm, config=config.pipeline)

    try:
        result = await engine.handle_turn(args.session, args.player, args.message)
    except TurnValidationError as e:
        print(f"Invalid turn: {e}", file=sys.stderr)
        return 2
    except LLMError as e:
        print(f"Model call failed, please retry: {e}", file=sys.stderr)
        return 1

    print(result.narrative_event.content)
    print()
    print(json.dumps({
        "turn_sequence": result.session_state.turn_sequence,
        "intent": result.turn.player_intent.intent_summary,
        "check": (
            result.turn.skill_check_result.outcome_tier if result.turn.skill_check_result
            else result.check_request.id if result.check_request
            else None
        ),
        "escalated": bool(result.safety and result.safety.escalate),
        "side_effect_failures": result.side_effect_failures,
        "audit_trail": [f"{a.node_id}:{a.decision}" for a in result.audit_trail],
    }, indent=2))
    return 0


def main():
    parser = argparse.ArgumentParser(description="Run one Chronicle Engine turn")
    parser.add_argument("message", help="Player message for this turn")
    parser.add_argument("--session", required=True, help="Session id")
    parser.add_argument("--player", required=True, help="Player id")
    parser.add_argument("--echo", action="store_true",
                        help="Use the echo model client instead of the configured backend")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Persist sessions as JSON under this directory")
    parser.add_argument("--config", type=Path, default=None,
                        help="JSON config file (default: $CHRONICLE_CONFIG)")
    parser.add_argument("--log-level", default="WARNING",
                        help="Root log level (default: WARNING)")
    args = parser.parse_args()

    setup_logging(args.log_level)
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
