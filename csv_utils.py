import csv
import io
from typing import Iterable, Any, Sequence, Callable, Optional
from fastapi.responses import StreamingResponse

def decode_csv_bytes(data: bytes) -> str:
    # Windowsでありがちな順に試す：UTF-8(BOM) → UTF-8 → CP932
    for enc in ("utf-8-sig", "utf-8", "cp932"):
        try:
            return data.decode(enc)
        except UnicodeDecodeError:
            continue
    # 最後の手段
    return data.decode("utf-8", errors="replace")


def normalize_header(h: str) -> str:
    h = (h or "").strip()
    mapping = {
        "name": "name",
        "tool": "name",
        "tool_name": "name",
        "description": "description",
        "serial_number": "serial_number",
        "serialnumber": "serial_number",
        "serial": "serial_number",
        "purchase_date": "purchase_date",
        "purchase_price": "purchase_price",
        "price": "purchase_price",
        "location": "location",
        "note": "note",
        "notes": "note",
    }
    key = h.lower().replace(" ", "_")
    return mapping.get(h, mapping.get(key, h))


def _iso(value: Any) -> str:
    if value is None:
        return ""
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


EVENT_COLUMNS: Sequence[tuple[str, Callable[[Any], str]]] = [
    ("id", lambda e: str(getattr(e, "id", ""))),
    ("created_at", lambda e: _iso(getattr(e, "created_at", None))),
    ("tool_id", lambda e: str(getattr(e, "tool_id", ""))),
    ("event_type", lambda e: str(getattr(e, "event_type", ""))),
    ("old_status", lambda e: str(getattr(e, "old_status", "") or "")),
    ("new_status", lambda e: str(getattr(e, "new_status", "") or "")),
    ("from_location_id", lambda e: str(getattr(e, "from_location_id", "") or "")),
    ("to_location_id", lambda e: str(getattr(e, "to_location_id", "") or "")),
    ("from_person_id", lambda e: str(getattr(e, "from_person_id", "") or "")),
    ("to_person_id", lambda e: str(getattr(e, "to_person_id", "") or "")),
    ("user_id", lambda e: str(getattr(e, "user_id", "") or "")),
    ("notes", lambda e: str(getattr(e, "notes", "") or "")),
]


def rows_to_csv_response(
    rows: Iterable[Any],
    *,
    filename: str = "tool_events.csv",
    columns: Optional[Sequence[tuple[str, Callable[[Any], str]]]] = None,
) -> StreamingResponse:
    """
    rows(iterable) を CSV にしてダウンロードさせる StreamingResponse を返す。
    属性アクセスできればORM/Pydanticどちらでもよい。
    """
    if columns is None:
        columns = EVENT_COLUMNS

    def generate():
        buf = io.StringIO()
        w = csv.writer(buf)

        # header
        w.writerow([h for h, _ in columns])
        yield buf.getvalue()
        buf.seek(0)
        buf.truncate(0)

        # rows
        for r in rows:
            w.writerow([getter(r) for _, getter in columns])
            yield buf.getvalue()
            buf.seek(0)
            buf.truncate(0)

    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return StreamingResponse(generate(), media_type="text/csv; charset=utf-8", headers=headers)

def csv_bytes_to_rows(data: bytes) -> tuple[list[dict[str, str]], str | None]:
    """
    CSVのバイト列を rows(list[dict]) に変換する。
    戻り値: (rows, error_message)
      - 成功: (rows, None)
      - 失敗: ([], "CSV header not found") など
    """
    text = decode_csv_bytes(data)
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        return [], "CSV header not found"

    field_map = {fn: normalize_header(fn) for fn in reader.fieldnames}

    rows: list[dict[str, str]] = []
    for raw in reader:
        row: dict[str, str] = {}
        for k, v in raw.items():
            nk = field_map.get(k, k)
            row[nk] = v if v is not None else ""
        rows.append(row)

    if "name" not in field_map.values():
        return [], "CSV must contain a name column"

    return rows, None
