#!/usr/bin/env python3
"""
Test report generator.

Reads `go test -json` event streams (a file, a directory of files, a zip
archive, or any of those behind an http(s) URL) and writes a JUnit XML
report, or a JSON summary with --json.
"""
import argparse
import io
import json
import logging
import os
import sys
import xml.etree.ElementTree as ET
import zipfile
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlparse

import requests

from pds_integration.logs import configure_logging

logger = logging.getLogger(__name__)

DEFAULT_PACKAGE_NAME = 'Tests'
DOWNLOAD_TIMEOUT = 120

MODE_DEFAULT = ''
MODE_IGNORE_PARENT_RESULTS = 'ignore-parent-results'
MODE_EXCLUDE_PARENTS = 'exclude-parents'
SUBTEST_MODES = (MODE_DEFAULT, MODE_IGNORE_PARENT_RESULTS, MODE_EXCLUDE_PARENTS)

RESULT_ACTIONS = ('pass', 'fail', 'skip')


class ReportError(Exception):
    pass


class ReportParseError(ReportError):
    pass


@dataclass
class CaseResult:
    name: str
    result: str = ''
    elapsed: float = 0.0
    output: List[str] = field(default_factory=list)


@dataclass
class PackageResult:
    name: str
    timestamp: str = ''
    result: str = ''
    elapsed: float = 0.0
    output: List[str] = field(default_factory=list)
    tests: Dict[str, CaseResult] = field(default_factory=dict)

    def parents(self) -> set:
        """Names of tests that have subtests"""
        names = set()
        for name in self.tests:
            if '/' in name:
                names.add(name.rsplit('/', 1)[0])
        return names


def parse_subtest_mode(value: str) -> str:
    if value in SUBTEST_MODES:
        return value
    logger.warning("Unknown subtest mode %r, using default mode", value)
    return MODE_DEFAULT


def parse_events(lines: Iterable[str], package_name: str = DEFAULT_PACKAGE_NAME) -> List[PackageResult]:
    """
    Fold a test2json event stream into per-package results.

    Raises:
        ReportParseError when a non-empty line is not a JSON event
    """
    packages: Dict[str, PackageResult] = {}
    for lineno, line in enumerate(lines, 1):
        line = line.strip()
        if not line:
            continue
        try:
            event = json.loads(line)
        except ValueError as e:
            raise ReportParseError(f"line {lineno}: {e}") from e
        if not isinstance(event, dict):
            raise ReportParseError(f"line {lineno}: not a test event")

        name = event.get('Package') or package_name
        package = packages.get(name)
        if package is None:
            package = packages[name] = PackageResult(name)
        if not package.timestamp and event.get('Time'):
            package.timestamp = event['Time']

        action = event.get('Action', '')
        test_name = event.get('Test')
        if not test_name:
            if action == 'output':
                package.output.append(event.get('Output', ''))
            elif action in RESULT_ACTIONS:
                package.result = action
                package.elapsed = float(event.get('Elapsed') or 0)
            continue

        test = package.tests.get(test_name)
        if test is None:
            test = package.tests[test_name] = CaseResult(test_name)
        if action == 'output':
            test.output.append(event.get('Output', ''))
        elif action in RESULT_ACTIONS:
            test.result = action
            test.elapsed = float(event.get('Elapsed') or 0)
    return list(packages.values())


def _apply_mode(package: PackageResult, mode: str) -> List[CaseResult]:
    parents = package.parents()
    tests = []
    for test in package.tests.values():
        if test.name in parents:
            if mode == MODE_EXCLUDE_PARENTS:
                continue
            if mode == MODE_IGNORE_PARENT_RESULTS and test.result == 'fail':
                test = CaseResult(test.name, 'pass', test.elapsed, test.output)
        tests.append(test)
    return tests


def _seconds(value: float) -> str:
    return f"{value:.3f}"


def build_junit(packages: List[PackageResult], mode: str = MODE_DEFAULT, sys_logs: bool = False) -> ET.Element:
    root = ET.Element('testsuites')
    totals = {'tests': 0, 'failures': 0, 'errors': 0, 'skipped': 0}
    total_time = 0.0
    for index, package in enumerate(packages):
        tests = _apply_mode(package, mode)
        counts = {
            'tests': len(tests),
            'failures': sum(1 for t in tests if t.result == 'fail'),
            'errors': sum(1 for t in tests if not t.result),
            'skipped': sum(1 for t in tests if t.result == 'skip'),
        }
        suite = ET.SubElement(root, 'testsuite', {
            'name': package.name,
            'tests': str(counts['tests']),
            'failures': str(counts['failures']),
            'errors': str(counts['errors']),
            'id': str(index),
            'skipped': str(counts['skipped']),
            'time': _seconds(package.elapsed),
        })
        if package.timestamp:
            suite.set('timestamp', package.timestamp)
        for test in tests:
            case = ET.SubElement(suite, 'testcase', {
                'name': test.name, 'classname': package.name, 'time': _seconds(test.elapsed),
            })
            output = ''.join(test.output)
            if test.result == 'fail':
                ET.SubElement(case, 'failure', {'message': 'Failed'}).text = output
            elif test.result == 'skip':
                ET.SubElement(case, 'skipped', {'message': 'Skipped'}).text = output
            elif not test.result:
                ET.SubElement(case, 'error', {'message': 'No test result found'}).text = output
        if sys_logs and package.output:
            ET.SubElement(suite, 'system-out').text = ''.join(package.output)
        for key, value in counts.items():
            totals[key] += value
        total_time += package.elapsed

    for key, value in totals.items():
        root.set(key, str(value))
    root.set('time', _seconds(total_time))
    return root


def summarize(packages: List[PackageResult], mode: str = MODE_DEFAULT) -> Dict:
    suites = []
    for package in packages:
        tests = _apply_mode(package, mode)
        suites.append({
            'name': package.name,
            'time': package.elapsed,
            'tests': len(tests),
            'failures': sum(1 for t in tests if t.result == 'fail'),
            'skipped': sum(1 for t in tests if t.result == 'skip'),
            'testcases': [{'name': t.name, 'result': t.result or 'unknown', 'time': t.elapsed} for t in tests],
        })
    return {
        'tests': sum(s['tests'] for s in suites),
        'failures': sum(s['failures'] for s in suites),
        'skipped': sum(s['skipped'] for s in suites),
        'suites': suites,
    }


# Inputs

def is_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def download(url: str) -> bytes:
    response = requests.get(url, timeout=DOWNLOAD_TIMEOUT)
    if response.status_code != 200:
        raise ReportError(f"received unexpected status code {response.status_code} from {url}")
    return response.content


def read_zip(data: bytes) -> str:
    """Concatenate every member of the archive"""
    buffer = io.StringIO()
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        for member in archive.infolist():
            if member.is_dir():
                continue
            logger.info("Unzipping %s", member.filename)
            with archive.open(member) as f:
                buffer.write(f.read().decode('utf-8', errors='replace'))
                buffer.write('\n')
    return buffer.getvalue()


def collect_sources(file: str = '', directory: str = '', zip_file: str = '') -> List[str]:
    """Raw event streams from whichever input was given (file, then directory, then zip)"""
    if file:
        if is_url(file):
            return [download(file).decode('utf-8', errors='replace')]
        with open(file, encoding='utf-8') as f:
            return [f.read()]

    if directory:
        sources = []
        for name in sorted(os.listdir(directory)):
            path = os.path.join(directory, name)
            if os.path.isdir(path):
                continue
            try:
                with open(path, encoding='utf-8') as f:
                    sources.append(f.read())
            except OSError as e:
                logger.error("open file %s: %s", path, e)
        return sources

    if zip_file:
        if is_url(zip_file):
            return [read_zip(download(zip_file))]
        with open(zip_file, 'rb') as f:
            return [read_zip(f.read())]

    return []


def generate(sources: Iterable[str]) -> List[PackageResult]:
    packages: List[PackageResult] = []
    for index, source in enumerate(sources):
        try:
            packages.extend(parse_events(source.splitlines()))
        except ReportParseError as e:
            logger.error("parse source %d: %s", index, e)
    return packages


def write_xml(root: ET.Element, stream) -> None:
    ET.indent(root, space='\t')
    stream.write(ET.tostring(root, encoding='unicode'))
    stream.write('\n')


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Generate a JUnit report from go test -json output')
    parser.add_argument('-d', dest='directory', default='', help='Directory path containing log files')
    parser.add_argument('-f', dest='file', default='', help='Log file name or URL')
    parser.add_argument('-o', dest='output', default='', help='File path to write report to')
    parser.add_argument('--gzip', dest='zip_file', default='', help='Zipped file path or URL')
    parser.add_argument('--mode', default=MODE_DEFAULT,
                        help='Subtest mode ["", ignore-parent-results, exclude-parents]')
    parser.add_argument('--sys-logs', action='store_true', help='Include package output as system-out')
    parser.add_argument('--json', action='store_true', help='Write a JSON summary instead of JUnit XML')
    parser.add_argument('-v', '--verbose', action='store_true')
    args = parser.parse_args(argv)

    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    mode = parse_subtest_mode(args.mode)

    try:
        sources = collect_sources(args.file, args.directory, args.zip_file)
    except (OSError, ReportError, requests.RequestException, zipfile.BadZipFile) as e:
        logger.error("read input: %s", e)
        return 1

    packages = generate(sources)

    if args.output:
        try:
            stream = open(args.output, 'w', encoding='utf-8')
        except OSError as e:
            logger.error("open file to write result: %s", e)
            return 1
    else:
        stream = sys.stdout
    try:
        if args.json:
            json.dump(summarize(packages, mode), stream, indent=2)
            stream.write('\n')
        else:
            write_xml(build_junit(packages, mode, args.sys_logs), stream)
    finally:
        if stream is not sys.stdout:
            stream.close()
    return 0


if __name__ == '__main__':
    sys.exit(main())
