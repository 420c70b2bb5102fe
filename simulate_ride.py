# simulate_ride.py
"""
Replays a recorded ride trace through RideMonitor on a virtual clock.

Every step is applied at its offset from the start of the ride and all
timers (idle checks, fatigue ticks, confirmation deadlines, fall grace,
emergency countdown) fire in between exactly as they would live.

Trace format (JSON)
-------------------
    {
      "start": 1700000000,                        # optional epoch seconds
      "steps": [
        {"t": 0,   "kind": "location", "lat": 12.9716, "lng": 77.5946},
        {"t": 1,   "kind": "motion", "x": 0.2, "y": 9.8, "z": 0.4},
        {"t": 1,   "kind": "orientation", "beta": 4, "gamma": -2},
        {"t": 30,  "kind": "weather", "temperature": 39, "humidity": 60, "feels_like": 47},
        {"t": 32,  "kind": "say", "text": "i'm fine"},
        {"t": 40,  "kind": "cancel"},
        {"t": 90,  "kind": "resolve"},
        {"t": 95,  "kind": "unsafe_zone", "message": "Poorly lit stretch"},
        {"t": 600, "kind": "end"}
      ]
    }

Usage
-----
    python simulate_ride.py trace.json
    python simulate_ride.py trace.json --language hi-IN --data-dir /tmp/ride -v
    python simulate_ride.py trace.json --speak          # real text-to-speech
"""

import argparse
import json
import logging
import sys
import time
from dataclasses import asdict
from pathlib import Path

from ride_monitor.clock import VirtualClock
from ride_monitor.config import SUPPORTED_LANGUAGES, Settings
from ride_monitor.pipeline import RideMonitor
from ride_monitor.sampler import Position
from ride_monitor.weather import WeatherData
from ride_response.voice_assistant import VoiceNotifier

logger = logging.getLogger('simulate_ride')


def apply_step(monitor: RideMonitor, step: dict) -> bool:
    """Feed one trace step. Returns False once the ride has ended."""
    kind = step.get('kind')
    ts = monitor.clock.now()

    if kind == 'location':
        monitor.on_location(step['lat'], step['lng'], step.get('accuracy'), timestamp=ts)
    elif kind == 'motion':
        monitor.on_motion(step.get('x'), step.get('y'), step.get('z'), timestamp=ts)
    elif kind == 'orientation':
        monitor.on_orientation(step.get('beta'), step.get('gamma'), timestamp=ts)
    elif kind == 'weather':
        data = WeatherData.from_dict({k: v for k, v in step.items() if k not in ('t', 'kind')})
        data.last_updated = ts
        monitor.on_weather(data)
    elif kind == 'say':
        monitor.on_transcript(step['text'])
    elif kind == 'cancel':
        monitor.cancel_confirmation()
        monitor.cancel_emergency()
    elif kind == 'resolve':
        monitor.resolve_emergency()
    elif kind == 'unsafe_zone':
        monitor.trigger_unsafe_zone(step.get('message'))
    elif kind == 'wellness_check':
        monitor.trigger_wellness_check()
    elif kind == 'sos':
        monitor.trigger_manual_emergency()
    elif kind == 'end':
        return False
    else:
        logger.warning("Unknown step kind %r, skipped", kind)
    return True


def run(trace: dict, settings: Settings, speak: bool = False):
    clock = VirtualClock(start=float(trace.get('start') or time.time()))
    notifier = VoiceNotifier(language=settings.language, enabled=speak)
    monitor = RideMonitor(settings, clock=clock, notifier=notifier, background=False)

    steps = sorted(trace.get('steps', []), key=lambda s: s.get('t', 0))
    origin = clock.now()

    first = next((s for s in steps if s.get('kind') == 'location'), None)
    start_pos = Position(first['lat'], first['lng']) if first else None
    monitor.start_ride(start_pos)

    for step in steps:
        clock.advance_to(origin + float(step.get('t', 0)))
        monitor.process_pending()
        if not apply_step(monitor, step):
            break
        monitor.process_pending()

    # let anything still counting down (fall grace, emergency) play out
    for _ in range(15):
        clock.advance(1)
        monitor.process_pending()

    return monitor.end_ride()


def main():
    parser = argparse.ArgumentParser(description='Replay a ride trace through the risk pipeline')
    parser.add_argument('trace', help='Path to a JSON ride trace')
    parser.add_argument('--language', default=None, choices=SUPPORTED_LANGUAGES,
                        help='Prompt language (default: from environment)')
    parser.add_argument('--data-dir', default=None,
                        help='Where local stores are written (default: from environment)')
    parser.add_argument('--speak', action='store_true', help='Use real text-to-speech')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    )

    trace_path = Path(args.trace)
    if not trace_path.exists():
        print(f"ERROR: trace not found: {trace_path}")
        sys.exit(1)
    with open(trace_path, 'r', encoding='utf-8') as f:
        trace = json.load(f)

    settings = Settings.from_env()
    if args.language:
        settings.language = args.language
    if args.data_dir:
        settings.data_dir = Path(args.data_dir)
    # replays never touch the shared remote store
    settings.sync_url = None

    summary = run(trace, settings, speak=args.speak)
    if summary is None:
        print("No ride summary produced.")
        sys.exit(1)

    print("\nRide summary")
    print("-" * 40)
    for key, value in asdict(summary).items():
        print(f"{key:>15}: {value}")


if __name__ == '__main__':
    main()
