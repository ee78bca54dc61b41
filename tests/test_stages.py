import sys
import unittest
from pathlib import Path

# Add parent directory to path so we can import our modules
sys.path.append(str(Path(__file__).parent.parent))

from image_rewriter.stages import (
    LineKind,
    classify,
    parse_from,
    read_logical_line,
    reflow,
    split_image_reference,
    split_stages,
)

MULTI_STAGE = """ARG PY_VERSION=3.11
# builder
FROM python:3.11-slim AS build
RUN apt-get update && \\
    apt-get install -y gcc
COPY . /app

FROM python:3.11-slim
COPY --from=build /app /app
CMD ["python", "/app/main.py"]"""


class TestClassify(unittest.TestCase):
    def test_instruction_kinds(self):
        self.assertEqual(classify("FROM python:3.11"), LineKind.FROM)
        self.assertEqual(classify("  from python"), LineKind.FROM)
        self.assertEqual(classify("RUN apt-get install -y curl"), LineKind.INSTALL)
        self.assertEqual(classify("RUN apt-get -y install curl"), LineKind.INSTALL)
        self.assertEqual(classify("RUN dnf install -y gcc"), LineKind.INSTALL)
        self.assertEqual(classify("RUN useradd -r app"), LineKind.USER_MANAGEMENT)
        self.assertEqual(classify("RUN pip install flask"), LineKind.RUN)
        self.assertEqual(classify("USER nonroot"), LineKind.USER)
        self.assertEqual(classify("COPY . /app"), LineKind.OTHER)

    def test_comments_and_blank_lines_are_other(self):
        self.assertEqual(classify("# RUN apt-get install -y curl"), LineKind.OTHER)
        self.assertEqual(classify(""), LineKind.OTHER)
        self.assertEqual(classify("   "), LineKind.OTHER)

    def test_word_boundary(self):
        self.assertEqual(classify("FROMAGE cheese"), LineKind.OTHER)


class TestFromParsing(unittest.TestCase):
    def test_image_reference_parts(self):
        self.assertEqual(split_image_reference("python:3.11"), ("python", "3.11", None))
        self.assertEqual(split_image_reference("localhost:5000/app"), ("localhost:5000/app", None, None))
        self.assertEqual(split_image_reference("python@sha256:abc"), ("python", None, "sha256:abc"))

    def test_parse_from_with_flags_and_alias(self):
        instruction = parse_from("FROM --platform=$BUILDPLATFORM golang:1.21 AS build")
        self.assertEqual(instruction.flags, "--platform=$BUILDPLATFORM ")
        self.assertEqual(instruction.name, "golang")
        self.assertEqual(instruction.tag, "1.21")
        self.assertEqual(instruction.alias_name, "build")
        self.assertEqual(instruction.reference, "golang:1.21")

    def test_unparseable_from(self):
        self.assertIsNone(parse_from("FROM"))


class TestContinuations(unittest.TestCase):
    def test_read_logical_line(self):
        lines = MULTI_STAGE.split("\n")
        text, count = read_logical_line(lines, 3)
        self.assertEqual(count, 2)
        self.assertEqual(text, "RUN apt-get update && apt-get install -y gcc")

    def test_single_line(self):
        self.assertEqual(read_logical_line(["RUN echo hi", "COPY . ."], 0), ("RUN echo hi", 1))

    def test_comment_inside_continuation_is_skipped(self):
        lines = ["RUN apt-get install -y \\", "# the compiler", "    gcc"]
        self.assertEqual(read_logical_line(lines, 0), ("RUN apt-get install -y gcc", 3))

    def test_reflow_single_line_stays_single(self):
        self.assertEqual(reflow("RUN a && b", 1), ["RUN a && b"])

    def test_reflow_short_command_collapses(self):
        self.assertEqual(reflow("RUN apk add --no-cache curl", 3), ["RUN apk add --no-cache curl"])

    def test_reflow_chained_command(self):
        self.assertEqual(
            reflow("  RUN apk add --no-cache curl && pip install flask", 2),
            ["  RUN apk add --no-cache curl \\", "      && pip install flask"],
        )


class TestSplitStages(unittest.TestCase):
    def test_two_stages(self):
        stages = split_stages(MULTI_STAGE)
        self.assertEqual(len(stages), 2)

        build, runtime = stages
        self.assertEqual(build.base_image, "python:3.11-slim")
        self.assertEqual(build.alias, "build")
        self.assertTrue(build.has_run_commands)
        self.assertEqual((build.start_line, build.end_line), (2, 6))

        self.assertIsNone(runtime.alias)
        self.assertFalse(runtime.has_run_commands)
        self.assertEqual(runtime.start_line, 7)
        self.assertEqual(runtime.lines[-1], 'CMD ["python", "/app/main.py"]')

    def test_no_stages(self):
        self.assertEqual(split_stages("# just a comment\n"), [])


if __name__ == '__main__':
    unittest.main()
