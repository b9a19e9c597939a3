"""skypack-telemetry -- Fetch one telemetry record."""

import sys

from skypack.cli._common import (
    EXIT_DEVICE_ERROR,
    EXIT_OK,
    EXIT_USAGE_ERROR,
    base_parser,
    format_response,
    make_client,
    setup_logging,
)
from skypack.errors import DeviceError, TelemetryError
from skypack.telemetry import locked_gnss_time, nav_lla


def main() -> int:
    parser = base_parser("Fetch telemetry from a Skypack device")
    parser.add_argument("--position", action="store_true", help="print only the navigation position (deg, deg, m)")
    parser.add_argument("--time", dest="gnss_time", action="store_true", help="print only the locked GNSS UTC time")
    args = parser.parse_args()
    setup_logging(args)

    try:
        client = make_client(args)
    except KeyboardInterrupt:
        return 130
    except (DeviceError, ValueError) as e:
        print(f"Connection error: {e}", file=sys.stderr)
        return EXIT_USAGE_ERROR

    try:
        response = client.get_telemetry_sync()
        if not response.ok:
            print(format_response(response, fmt=args.output_format))
            return EXIT_DEVICE_ERROR

        if args.position:
            lat, lon, alt = nav_lla(response.payload)
            print(f"{lat:.8f} {lon:.8f} {alt:.2f}")
        elif args.gnss_time:
            print(f"{locked_gnss_time(response.payload):.3f}")
        else:
            print(format_response(response, fmt=args.output_format))
    except KeyboardInterrupt:
        return 130
    except TelemetryError as e:
        print(f"Telemetry error: {e}", file=sys.stderr)
        return EXIT_DEVICE_ERROR
    except DeviceError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_DEVICE_ERROR
    finally:
        client.close()

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
