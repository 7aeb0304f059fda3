import csv
from datetime import datetime
from io import StringIO
from typing import Iterable, Sequence

from fastapi.responses import Response

from database import utcnow


def render_csv(header: Sequence[str], rows: Iterable[Sequence]) -> str:
    out = StringIO()
    writer = csv.writer(out)
    writer.writerow(header)
    for row in rows:
        writer.writerow(["" if v is None else v for v in row])
    return out.getvalue()


def csv_response(prefix: str, header: Sequence[str], rows: Iterable[Sequence]) -> Response:
    filename = f"{prefix}-{utcnow().date().isoformat()}.csv"
    return Response(
        content=render_csv(header, rows),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


def day(value) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    return ""
