# -*- coding: utf-8 -*-
"""
invoice_export.py — экспорт счёта в XML Spreadsheet 2003 (открывается Excel / LibreOffice как .xls)

Два листа:
  "Invoice"                  — для клиента: реквизиты, одна позиция (кол-во, цена за деталь, итог),
                               разбивка материалов ТОЛЬКО по весу (без себестоимости);
  "Internal Cost Breakdown"  — для мастерской: все статьи затрат, субтотал, брак, наценка, итог.

Документ целиком собирается в памяти (render_workbook), затем пишется через временный файл
и os.replace — при ошибке открытия/записи целевой файл не появляется наполовину.
"""
from __future__ import annotations

import os
import datetime as dt
import tempfile
from typing import List, Optional
from xml.sax.saxutils import escape

from invoice_core import CostBreakdown, FilamentUsage, JobParameters, nz, replacement_file_mode


class ExportError(Exception):
    """Счёт не удалось записать (путь недоступен, нет прав, диск и т.п.)."""


_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def escape_xml(text) -> str:
    """Экранирует & < > " ' для вставки в текст ячейки."""
    return escape("" if text is None else str(text), _XML_ENTITIES)


_HEAD = """<?xml version="1.0"?>
<?mso-application progid="Excel.Sheet"?>
<Workbook xmlns="urn:schemas-microsoft-com:office:spreadsheet"
 xmlns:o="urn:schemas-microsoft-com:office:office"
 xmlns:x="urn:schemas-microsoft-com:office:excel"
 xmlns:ss="urn:schemas-microsoft-com:office:spreadsheet"
 xmlns:html="http://www.w3.org/TR/REC-html40">
<Styles>
 <Style ss:ID="Default" ss:Name="Normal">
  <Alignment ss:Vertical="Bottom"/>
  <Borders/>
  <Font ss:FontName="Calibri" x:Family="Swiss" ss:Size="11" ss:Color="#000000"/>
  <Interior/>
  <NumberFormat/>
  <Protection/>
 </Style>
 <Style ss:ID="sHeader">
  <Font ss:FontName="Calibri" x:Family="Swiss" ss:Size="14" ss:Bold="1"/>
  <Alignment ss:Horizontal="Center"/>
 </Style>
 <Style ss:ID="sBold">
  <Font ss:FontName="Calibri" x:Family="Swiss" ss:Size="11" ss:Bold="1"/>
 </Style>
 <Style ss:ID="sCurrency">
  <NumberFormat ss:Format="$#,##0.00"/>
 </Style>
 <Style ss:ID="sCurrencyBold">
  <Font ss:FontName="Calibri" x:Family="Swiss" ss:Size="11" ss:Bold="1"/>
  <NumberFormat ss:Format="$#,##0.00"/>
 </Style>
</Styles>
"""

_TABLE_ATTRS = 'x:FullColumns="1" x:FullRows="1" ss:DefaultRowHeight="15"'


# ---------- Ячейки ----------
def _str_cell(text, style: str | None = None) -> str:
    st = f' ss:StyleID="{style}"' if style else ""
    return f'<Cell{st}><Data ss:Type="String">{escape_xml(text)}</Data></Cell>'


def _num_cell(value, style: str | None = None) -> str:
    st = f' ss:StyleID="{style}"' if style else ""
    return f'<Cell{st}><Data ss:Type="Number">{value}</Data></Cell>'


def _money_cell(value: float, bold: bool = False) -> str:
    # округление до центов — только здесь, в представлении
    return _num_cell(f"{nz(value):.2f}", "sCurrencyBold" if bold else "sCurrency")


def _row(*cells: str, style: str | None = None) -> str:
    st = f' ss:StyleID="{style}"' if style else ""
    return f"<Row{st}>" + "".join(cells) + "</Row>\n"


def _blank() -> str:
    return _row(_str_cell(""))


def _field(label: str, value) -> str:
    return _row(_str_cell(label, "sBold"), _str_cell(value))


# ---------- Листы ----------
def _invoice_sheet(
    breakdown: CostBreakdown,
    params: JobParameters,
    filaments: List[FilamentUsage],
    date: dt.date,
) -> List[str]:
    out = ['<Worksheet ss:Name="Invoice">\n', f'<Table ss:ExpandedColumnCount="5" {_TABLE_ATTRS}>\n']
    out += ['<Column ss:Width="150"/>\n', '<Column ss:Width="100"/>\n', '<Column ss:Width="100"/>\n']

    out.append('<Row ss:Height="20">'
               '<Cell ss:MergeAcross="4" ss:StyleID="sHeader"><Data ss:Type="String">INVOICE</Data></Cell>'
               '</Row>\n')
    out.append(_blank())
    out.append(_field("From:", params.business_name))
    out.append(_blank())
    out.append(_field("To:", params.customer_name))
    out.append(_field("Email:", params.customer_email))
    out.append(_field("Phone:", params.customer_phone))
    out.append(_blank())
    out.append(_field("Job Name:", params.job_name))
    out.append(_field("Description:", params.job_description))
    out.append(_field("Date:", date.isoformat()))
    out.append(_blank())

    out.append(_row(_str_cell("Item"), _str_cell("Quantity"), _str_cell("Unit Price"), _str_cell("Total"),
                    style="sBold"))
    out.append(_row(
        _str_cell("3D Printed Parts"),
        _num_cell(int(breakdown.total_parts)),
        _money_cell(breakdown.final_price),
        _money_cell(breakdown.total_job_cost, bold=True),
    ))
    out.append(_blank())
    out.append(_blank())

    # клиенту — только вес, без цен
    out.append(_row(_str_cell("Material Breakdown"), style="sBold"))
    for fil in filaments:
        out.append(_row(_str_cell(f"{fil.name} ({fil.color})"), _str_cell(f"{nz(fil.weight_g):.2f} g")))

    out += ["</Table>\n", "</Worksheet>\n"]
    return out


def _internal_sheet(breakdown: CostBreakdown) -> List[str]:
    out = ['<Worksheet ss:Name="Internal Cost Breakdown">\n', f'<Table ss:ExpandedColumnCount="2" {_TABLE_ATTRS}>\n']
    out += ['<Column ss:Width="200"/>\n', '<Column ss:Width="100"/>\n']
    out.append(_row(_str_cell("INTERNAL COST BREAKDOWN"), style="sBold"))
    out.append(_blank())

    def cost(label: str, value: float, bold: bool = False) -> str:
        return _row(_str_cell(label, "sBold" if bold else None), _money_cell(value, bold=bold))

    out.append(cost("Material Cost", breakdown.material_cost))
    out.append(cost("Labor Cost", breakdown.labor_cost))
    out.append(cost("Machine Cost", breakdown.machine_cost))
    out.append(cost("Tooling Cost", breakdown.tooling_cost))
    out.append(cost("Post-Processing Cost", breakdown.postprocess_cost))
    out.append(_blank())
    out.append(cost("Subtotal", breakdown.subtotal))
    out.append(cost("Failure Adjustment", breakdown.failure_adjustment))
    out.append(cost("Cost Per Part", breakdown.cost_per_part))
    out.append(cost("Markup Amount", breakdown.markup_amount))
    out.append(cost("Final Price Per Part", breakdown.final_price))
    out.append(_blank())
    out.append(cost("Total Job Cost", breakdown.total_job_cost, bold=True))

    out += ["</Table>\n", "</Worksheet>\n"]
    return out


def render_workbook(
    breakdown: CostBreakdown,
    params: JobParameters,
    filaments: List[FilamentUsage],
    date: Optional[dt.date] = None,
) -> bytes:
    """Собирает документ целиком. Входные объекты не изменяются."""
    date = date or dt.date.today()
    parts = [_HEAD]
    parts += _invoice_sheet(breakdown, params, filaments, date)
    parts += _internal_sheet(breakdown)
    parts.append("</Workbook>\n")
    return "".join(parts).encode("utf-8")


def export_workbook(
    path: str,
    breakdown: CostBreakdown,
    params: JobParameters,
    filaments: List[FilamentUsage],
    date: Optional[dt.date] = None,
) -> str:
    """Пишет счёт в path. Возвращает абсолютный путь; при любой ошибке ввода-вывода — ExportError."""
    data = render_workbook(breakdown, params, filaments, date)
    target = os.path.abspath(os.path.expanduser(path))
    folder = os.path.dirname(target)
    if os.path.isdir(target):
        raise ExportError(f"Путь экспорта является папкой: {target}")
    try:
        fd, tmp = tempfile.mkstemp(prefix=".invoice-", suffix=".tmp", dir=folder)
    except OSError as e:
        raise ExportError(f"Не удалось открыть файл для записи {target}: {e}") from None
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(tmp, replacement_file_mode(target))
        os.replace(tmp, target)
    except OSError as e:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise ExportError(f"Не удалось записать {target}: {e}") from None
    return target
