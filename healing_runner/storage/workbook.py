from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Alignment, Font, PatternFill

from ..agent.records import Instruction, StepResult, StepStatus
from ..config import settings

INPUT_COLUMNS = {
    "STEP": "step",
    "ACTION": "action",
    "TARGET": "target",
    "DATA": "data",
    "TO BE EXECUTED": "execute",
    "EXECUTE": "execute",
}

RESULT_HEADERS = ["Status", "Remarks", "Actual Output", "Screenshot", "Page Source"]

_FILLS = {
    StepStatus.PASS: PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid"),
    StepStatus.FAIL: PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid"),
    StepStatus.SKIPPED: PatternFill(start_color="FFEB9C", end_color="FFEB9C", fill_type="solid"),
    StepStatus.STOPPED: PatternFill(start_color="D9D9D9", end_color="D9D9D9", fill_type="solid"),
}


def _cell_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def load_instructions(path: str | Path) -> List[Instruction]:
    """Read instructions from the first sheet of an .xlsx file."""
    wb = load_workbook(path, read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        rows = ws.iter_rows(values_only=True)
        header = next(rows, None)
        if header is None:
            return []
        mapping: dict[int, str] = {}
        for idx, name in enumerate(header):
            key = _cell_text(name).upper().replace("_", " ")
            if key in INPUT_COLUMNS:
                mapping[idx] = INPUT_COLUMNS[key]
        if "action" not in mapping.values():
            raise ValueError(f"{path}: no ACTION column in header {list(header)}")

        instructions: List[Instruction] = []
        for row_number, row in enumerate(rows, start=2):
            values = {field: None for field in INPUT_COLUMNS.values()}
            for idx, field_name in mapping.items():
                if idx < len(row):
                    values[field_name] = row[idx]
            if all(_cell_text(v) == "" for v in values.values()):
                continue
            execute = values["execute"]
            instructions.append(
                Instruction(
                    step=_cell_text(values["step"]) or str(len(instructions) + 1),
                    action=_cell_text(values["action"]),
                    target=_cell_text(values["target"]),
                    data=_cell_text(values["data"]),
                    execute=None if execute is None or _cell_text(execute) == "" else _cell_text(execute),
                    row_number=row_number,
                )
            )
        logging.info("instructions_loaded path=%s count=%s", path, len(instructions))
        return instructions
    finally:
        wb.close()


def write_results(
    source: str | Path,
    results: Iterable[StepResult],
    destination: str | Path | None = None,
) -> Path:
    """Copy the source sheet and append the result columns next to each row."""
    destination = Path(destination or Path(settings.results_dir) / settings.results_workbook)
    destination.parent.mkdir(parents=True, exist_ok=True)

    by_row = {r.row_number: r for r in results if r.row_number is not None}

    try:
        src_wb = load_workbook(source, data_only=True)
        src_ws = src_wb.worksheets[0]
        rows = [list(row) for row in src_ws.iter_rows(values_only=True)]
    except (FileNotFoundError, OSError) as exc:
        logging.warning("results_source_unreadable path=%s reason=%s", source, exc)
        rows = [["STEP", "ACTION", "TARGET", "DATA"]]
        for row_number, result in sorted(by_row.items()):
            while len(rows) < row_number - 1:
                rows.append([])
            rows.append([result.step, result.action, result.target, ""])

    wb = Workbook()
    ws = wb.active
    ws.title = "Results"
    width = max((len(r) for r in rows), default=0)
    header = list(rows[0]) + [None] * (width - len(rows[0])) + RESULT_HEADERS if rows else RESULT_HEADERS
    ws.append(header)
    bold = Font(bold=True)
    for col_idx in range(1, len(header) + 1):
        cell = ws.cell(row=1, column=col_idx)
        cell.font = bold
        cell.alignment = Alignment(horizontal="center")
    ws.freeze_panes = "A2"

    status_col = width + 1
    for row_number, row in enumerate(rows[1:], start=2):
        padded = list(row) + [None] * (width - len(row))
        result = by_row.get(row_number)
        if result is not None:
            padded += [
                result.status.value,
                result.remarks,
                result.actual_output,
                result.screenshot or "",
                result.page_source or "",
            ]
        ws.append(padded)
        if result is not None:
            status_cell = ws.cell(row=ws.max_row, column=status_col)
            status_cell.alignment = Alignment(horizontal="center")
            status_cell.fill = _FILLS[result.status]

    wb.save(destination)
    logging.info("results_written path=%s rows=%s", destination, len(by_row))
    return destination
