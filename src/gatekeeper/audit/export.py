"""
Audit export serialisers: json, csv and xml.

Field names and their order are part of the export contract.
"""

import csv
import io
import json
import xml.etree.ElementTree as ET
from typing import Callable, Dict, Iterable, List

from ..errors import UnsupportedExportFormatError
from .models import AuditEvent


CSV_HEADERS = [
    "timestamp", "event", "userId", "ipAddress", "category",
    "severity", "success", "resource", "action", "details",
]

XML_FIELDS = [
    "id", "timestamp", "event", "userId", "ipAddress", "category",
    "severity", "success", "resource", "action", "details",
]


def _flat(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    return str(value)


def export_json(events: Iterable[AuditEvent]) -> str:
    return json.dumps([e.to_dict() for e in events], indent=2, default=str)


def export_csv(events: Iterable[AuditEvent]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for event in events:
        record = event.to_dict()
        writer.writerow([_flat(record[name]) for name in CSV_HEADERS])
    return buffer.getvalue()


def export_xml(events: Iterable[AuditEvent]) -> str:
    root = ET.Element("auditLog")
    container = ET.SubElement(root, "events")
    for event in events:
        record = event.to_dict()
        node = ET.SubElement(container, "event")
        for name in XML_FIELDS:
            ET.SubElement(node, name).text = _flat(record[name])
    body = ET.tostring(root, encoding="unicode")
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + body


EXPORTERS: Dict[str, Callable[[List[AuditEvent]], str]] = {
    "json": export_json,
    "csv": export_csv,
    "xml": export_xml,
}


def export_events(events: List[AuditEvent], export_format: str = "json") -> str:
    """
    Serialise events.

    Raises:
        UnsupportedExportFormatError: For anything but json, csv or xml
    """
    exporter = EXPORTERS.get(export_format)
    if exporter is None:
        raise UnsupportedExportFormatError(export_format)
    return exporter(events)
