# runtime/run_sketch_loop.py

import argparse
import logging
import sys

from dotenv import load_dotenv
load_dotenv()

from config import LOG_LEVEL, DEFAULT_CANVAS_WIDTH, DEFAULT_CANVAS_HEIGHT
from agents.code_generator import create_generator
from agents.sandbox_renderer import create_renderer
from runtime.sketch_loop import SketchLoop, LoopConfig, LoopState
from runtime.persistence.attempt_store import AttemptStore


def _print_attempt(attempt):
    outcome = f"image={attempt.image_url}" if attempt.image_url else f"error={attempt.error}"
    print(f"[run_sketch_loop] #{attempt.index} {outcome}")
    if attempt.critique:
        print(f"    critique: {attempt.critique}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run a sketch loop in the foreground")
    parser.add_argument("objective", nargs="?", help="what the sketch should depict")
    parser.add_argument("--session", help="resume an existing session instead of creating one")
    parser.add_argument("--width", type=int, default=DEFAULT_CANVAS_WIDTH)
    parser.add_argument("--height", type=int, default=DEFAULT_CANVAS_HEIGHT)
    parser.add_argument("--iterations", type=int, default=None, help="0 runs until interrupted")
    parser.add_argument("--delay", type=float, default=None, help="seconds between rounds")
    parser.add_argument("--data-dir", default=None)
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))

    store = AttemptStore(args.data_dir)
    if args.session:
        session = store.get_session(args.session)
        if session is None:
            print(f"[run_sketch_loop] session {args.session} not found")
            return 1
        if not session.active:
            print(f"[run_sketch_loop] session {args.session} is stopped")
            return 1
    elif args.objective:
        session = store.create_session(args.objective, args.width, args.height, max_iterations=args.iterations)
    else:
        parser.error("objective is required unless --session is given")

    print(f"\n[run_sketch_loop] session {session.session_id}: {session.objective}")

    loop = SketchLoop(
        session_id=session.session_id,
        store=store,
        generator=create_generator(),
        renderer=create_renderer(),
        config=LoopConfig.from_env(max_iterations=args.iterations, delay_sec=args.delay),
    )
    loop.on_attempt(_print_attempt)

    try:
        result = loop.run()
    except KeyboardInterrupt:
        loop.stop()
        store.set_active(session.session_id, False)
        print("\n[run_sketch_loop] interrupted, session stopped")
        return 130

    print(f"[run_sketch_loop] finished: {result['state']} after {result['iterations_completed']} rounds")
    if result["state"] == LoopState.ERROR.value:
        print(f"[run_sketch_loop] error: {result['last_error']}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
