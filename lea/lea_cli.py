import asyncio
import sys

from lea.lea_ast import program_from_data
from lea.lea_printer import Printer
from lea.lea_runtime import ProgramRunner
from lea.lea_serialize import load_document

USAGE = "usage: lea <program.json|program.yaml>"


async def run_program_file(file_path: str):
    """Run a Lea program document non-interactively and exit with appropriate status."""
    runner = ProgramRunner()
    printer = Printer()
    try:
        program = program_from_data(load_document(file_path))
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    except (KeyError, TypeError, ValueError) as e:
        print(f"Error: malformed program document: {e}", file=sys.stderr)
        raise SystemExit(1)

    result = await runner.handle_program(program)
    for effect in result.side_effects:
        topics = effect.get('topics', [])
        if topics == ['stdout']:
            print(effect.get('message', ''))
        elif 'warning' in topics:
            print(effect.get('message', ''), file=sys.stderr)
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        raise SystemExit(1)
    if result.value is not None:
        print(printer.pformat(result.value))


def main():
    if len(sys.argv) < 2 or sys.argv[1].startswith("-"):
        print(USAGE, file=sys.stderr)
        raise SystemExit(2)
    asyncio.run(run_program_file(sys.argv[1]))


if __name__ == "__main__":
    main()
