"""CLI entry point for pawmotion.cli module.

Enables execution via:
    python -m pawmotion.cli recover_jobs [OPTIONS]
    python -m pawmotion.cli redeem_codes [OPTIONS]
"""

import sys

from pawmotion.cli import recover_jobs, redeem_codes

COMMANDS = {
    "recover_jobs": recover_jobs.main,
    "redeem_codes": redeem_codes.main,
}

if __name__ == "__main__":
    if len(sys.argv) < 2 or sys.argv[1] not in COMMANDS:
        print(f"Usage: python -m pawmotion.cli {{{','.join(COMMANDS)}}} [OPTIONS]", file=sys.stderr)
        raise SystemExit(2)
    COMMANDS[sys.argv[1]](sys.argv[2:])
