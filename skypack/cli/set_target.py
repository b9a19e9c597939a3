"""skypack-set-target -- Send one target state update."""

import sys
import time

from skypack.cli._common import (
    EXIT_DEVICE_ERROR,
    EXIT_OK,
    EXIT_USAGE_ERROR,
    base_parser,
    format_response,
    make_client,
    setup_logging,
)
from skypack.errors import DeviceError
from skypack.telemetry import velocity_ned


def main() -> int:
    parser = base_parser("Send a target state (precision landing zone) to a Skypack device")
    parser.add_argument("--lat", type=float, required=True, help="latitude in degrees")
    parser.add_argument("--lon", type=float, required=True, help="longitude in degrees")
    parser.add_argument("--alt", type=float, required=True, help="altitude in meters")
    parser.add_argument("--vel", type=float, default=0.0, help="horizontal speed in m/s (default: 0)")
    parser.add_argument("--vel-degrees", type=float, default=0.0, help="velocity heading in degrees (default: 0)")
    parser.add_argument("--timestamp", type=float, default=None, help="UTC seconds of the state (default: now)")
    args = parser.parse_args()
    setup_logging(args)

    if not -90.0 <= args.lat <= 90.0:
        print(f"Error: --lat must be within [-90, 90], got {args.lat}", file=sys.stderr)
        return EXIT_USAGE_ERROR

    timestamp = args.timestamp if args.timestamp is not None else time.time()
    velocity = velocity_ned(args.vel, args.vel_degrees)

    try:
        client = make_client(args)
    except KeyboardInterrupt:
        return 130
    except (DeviceError, ValueError) as e:
        print(f"Connection error: {e}", file=sys.stderr)
        return EXIT_USAGE_ERROR

    try:
        handle = client.set_target_state((args.lat, args.lon, args.alt), velocity, timestamp)
        response = handle.wait()
        print(format_response(response, fmt=args.output_format))
        if not response.ok:
            return EXIT_DEVICE_ERROR
    except KeyboardInterrupt:
        return 130
    except DeviceError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_DEVICE_ERROR
    finally:
        client.close()

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
