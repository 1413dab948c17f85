"""
Report Generator Module - Classbook

This module aggregates stored attendance records into student and school
statistics and exports them as Excel or CSV files.

Features:
- Student attendance report (day-weighted rates, period-weighted subject rates)
- School-wide attendance statistics bucketed by class
- Excel (openpyxl) and CSV export through pandas
"""

import logging
import os
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import pandas as pd

from classbook.modules.database_manager import Where
from classbook.modules.errors import ValidationError
from classbook.modules.schedule_clock import to_day_key


@dataclass
class SubjectStats:
    absent_periods: int = 0
    late_periods: int = 0
    excused_periods: int = 0
    total_periods: int = 0
    absence_rate: float = 0.0


@dataclass
class AttendanceReport:
    """Attendance summary of one student over a date range. Never stored."""
    student_id: str
    start_date: str
    end_date: str
    total_days: int = 0
    absent_days: int = 0
    late_days: int = 0
    excused_days: int = 0
    absence_rate: float = 0.0
    tardy_rate: float = 0.0
    by_subject: Dict[str, SubjectStats] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _rate(part: int, whole: int) -> float:
    return (part / whole) * 100 if whole > 0 else 0.0


class ReportGenerator:
    """
    Attendance statistics and exports.
    """

    def __init__(self, database_manager, output_dir: str = 'reports'):
        """
        Initialize the report generator.

        Args:
            database_manager: Document store
            output_dir (str): Folder for exported files
        """
        self.db = database_manager
        self.output_dir = output_dir
        self.supported_formats = ['excel', 'csv']
        self.logger = logging.getLogger(__name__)

    def _date_range(self, start_date, end_date):
        try:
            start, end = to_day_key(start_date), to_day_key(end_date)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid date range: {start_date!r} - {end_date!r}")
        if start > end:
            raise ValidationError(f"Start date {start} is after end date {end}")
        return start, end

    def generate_attendance_report(self, school_id: str, student_id: str,
                                   start_date, end_date) -> AttendanceReport:
        """
        Summarize one student's attendance between two dates (inclusive).

        Student-level rates count distinct days: a day with several absent
        periods is one absent day. Subject-level rates count periods.

        Args:
            school_id (str): School identifier
            student_id (str): Student
            start_date: First day of the range
            end_date: Last day of the range

        Returns:
            AttendanceReport: Aggregated statistics
        """
        start, end = self._date_range(start_date, end_date)
        records = self.db.query(
            school_id, 'attendance',
            Where('student_id', '==', student_id),
            Where('date', '>=', start),
            Where('date', '<=', end)
        )

        total_days, absent_days, late_days, excused_days = set(), set(), set(), set()
        by_subject: Dict[str, SubjectStats] = {}

        for record in records:
            day = record.get('date')
            total_days.add(day)
            stats = by_subject.setdefault(record.get('subject_id'), SubjectStats())

            status = record.get('status')
            if status == 'absent':
                absent_days.add(day)
                stats.absent_periods += 1
            elif status == 'late':
                late_days.add(day)
                stats.late_periods += 1
            elif status == 'excused':
                excused_days.add(day)
                stats.excused_periods += 1

            stats.total_periods += 1

        for stats in by_subject.values():
            stats.absence_rate = _rate(stats.absent_periods, stats.total_periods)

        return AttendanceReport(
            student_id=student_id,
            start_date=start,
            end_date=end,
            total_days=len(total_days),
            absent_days=len(absent_days),
            late_days=len(late_days),
            excused_days=len(excused_days),
            absence_rate=_rate(len(absent_days), len(total_days)),
            tardy_rate=_rate(len(late_days), len(total_days)),
            by_subject=by_subject
        )

    def get_school_attendance_stats(self, school_id: str, start_date, end_date) -> Dict[str, Any]:
        """
        School-wide attendance statistics between two dates (inclusive).

        School rates are weighted by record. Classes are keyed by class id and
        count the distinct students with records in the range. A class's absence
        rate divides its absent records by its share of all records, where the
        share is the class's fraction of the school's students.

        Returns:
            Dict[str, Any]: Totals, rates and by_class breakdown
        """
        start, end = self._date_range(start_date, end_date)
        records = self.db.query(school_id, 'attendance', Where('date', '>=', start), Where('date', '<=', end))
        total_students = self.db.count(school_id, 'users', Where('role', '==', 'student'))

        counts = {'absent': 0, 'late': 0, 'excused': 0, 'present': 0}
        classes: Dict[str, Dict[str, Any]] = {}

        for record in records:
            class_id = record.get('class_id') or 'unknown'
            bucket = classes.setdefault(class_id, {
                'name': record.get('class_name') or 'Unknown Class',
                'students': set(),
                'absent': 0,
                'late': 0,
                'excused': 0,
                'present': 0,
            })
            bucket['students'].add(record.get('student_id'))

            status = record.get('status')
            if status in counts:
                counts[status] += 1
                bucket[status] += 1

        def class_share(bucket):
            if not total_students:
                return 0
            return len(records) * (len(bucket['students']) / total_students)

        by_class = {
            class_id: {
                'class_name': bucket['name'],
                'total_students': len(bucket['students']),
                'absent_count': bucket['absent'],
                'late_count': bucket['late'],
                'absence_rate': _rate(bucket['absent'], class_share(bucket)),
            }
            for class_id, bucket in classes.items()
        }

        return {
            'total_students': total_students,
            'total_records': len(records),
            'absent_count': counts['absent'],
            'late_count': counts['late'],
            'excused_count': counts['excused'],
            'present_count': counts['present'],
            'absence_rate': _rate(counts['absent'], len(records)),
            'tardy_rate': _rate(counts['late'], len(records)),
            'by_class': by_class,
        }

    def _report_frames(self, report: Union[AttendanceReport, Dict[str, Any]]) -> Dict[str, pd.DataFrame]:
        if isinstance(report, AttendanceReport):
            summary = {k: v for k, v in report.to_dict().items() if k != 'by_subject'}
            subjects = [{'subject_id': subject_id, **asdict(stats)}
                        for subject_id, stats in report.by_subject.items()]
            return {
                'Summary': pd.DataFrame([summary]),
                'By Subject': pd.DataFrame(subjects),
            }

        summary = {k: v for k, v in report.items() if k != 'by_class'}
        by_class = [{'class_id': class_id, **stats} for class_id, stats in (report.get('by_class') or {}).items()]
        return {
            'Summary': pd.DataFrame([summary]),
            'By Class': pd.DataFrame(by_class),
        }

    def export_attendance_report(self, report: Union[AttendanceReport, Dict[str, Any]],
                                 output_format: str = 'excel',
                                 report_name: Optional[str] = None) -> Dict[str, Any]:
        """
        Write a student report or school statistics to a file.

        Args:
            report: AttendanceReport or the dict from get_school_attendance_stats
            output_format (str): 'excel' or 'csv'
            report_name (str): File name prefix

        Returns:
            Dict[str, Any]: success, filename, filepath, format and size, or success and error
        """
        if output_format not in self.supported_formats:
            return {'success': False, 'error': f"Unsupported format: {output_format}"}

        if report_name is None:
            report_name = (f"attendance_{report.student_id}" if isinstance(report, AttendanceReport)
                           else 'school_attendance')

        try:
            os.makedirs(self.output_dir, exist_ok=True)
            frames = self._report_frames(report)
            timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')

            if output_format == 'excel':
                filename = f"{report_name}_{timestamp}.xlsx"
                filepath = os.path.join(self.output_dir, filename)
                with pd.ExcelWriter(filepath, engine='openpyxl') as writer:
                    for sheet_name, frame in frames.items():
                        frame.to_excel(writer, sheet_name=sheet_name, index=False)
            else:
                filename = f"{report_name}_{timestamp}.csv"
                filepath = os.path.join(self.output_dir, filename)
                # CSV holds the detail table; the summary goes into the leading rows
                detail_name = [name for name in frames if name != 'Summary'][0]
                combined = pd.concat([frames['Summary'], frames[detail_name]], ignore_index=True, sort=False)
                combined.to_csv(filepath, index=False, encoding='utf-8')

            self.logger.info(f"Exported attendance report {filename}")
            return {
                'success': True,
                'filename': filename,
                'filepath': filepath,
                'format': output_format,
                'size': os.path.getsize(filepath)
            }

        except Exception as e:
            self.logger.error(f"Report export failed: {str(e)}")
            return {
                'success': False,
                'error': str(e)
            }
