"""
Command output modes.

This module defines how velocity commands are post-processed and which
platform-specific representations accompany the twist sent to the base.
"""

from dataclasses import dataclass
import argparse
import sys


@dataclass
class OutputMode:
    """Configuration of command post-processing."""

    # Saturation
    proportional_saturation: bool = False  # If True, scale all axes by one factor

    # Platform representations
    track_commands: bool = False  # Left/right track speeds for tracked bases
    steering_commands: bool = False  # Steering angle for car-like bases

    def __str__(self):
        """Human-readable description of the output pipeline."""
        components = []

        if self.proportional_saturation:
            components.append("Saturation(proportional)")
        else:
            components.append("Saturation(per-axis)")

        components.append("Twist")
        if self.track_commands:
            components.append("Tracks")
        if self.steering_commands:
            components.append("Steering")

        return " → ".join(components)

    def to_dict(self):
        """Convert to dictionary for logging."""
        return {
            'proportional_saturation': self.proportional_saturation,
            'track_commands': self.track_commands,
            'steering_commands': self.steering_commands,
        }


def parse_output_flags(args=None):
    """
    Parse command-line flags selecting the command output mode.

    Args:
        args: List of command-line arguments (default: sys.argv[1:])

    Returns:
        tuple: (OutputMode, remaining_args)
            - OutputMode with appropriate settings
            - List of remaining arguments not consumed
    """
    parser = argparse.ArgumentParser(add_help=False)

    parser.add_argument('--proportional-saturation', action='store_true',
                        help='Scale all velocity components by one factor when any exceeds its limit')
    parser.add_argument('--tracks', action='store_true',
                        help='Publish left/right track speeds alongside the twist')
    parser.add_argument('--steering', action='store_true',
                        help='Publish a car-like steering angle alongside the twist')

    if args is None:
        args = sys.argv[1:]

    known_args, remaining_args = parser.parse_known_args(args)

    mode = OutputMode(
        proportional_saturation=known_args.proportional_saturation,
        track_commands=known_args.tracks,
        steering_commands=known_args.steering,
    )

    return mode, remaining_args
