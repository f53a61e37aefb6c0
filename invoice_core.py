# -*- coding: utf-8 -*-
"""
invoice_core.py — чистое ядро калькулятора себестоимости и цены FDM-заказа (invoice)

Цели:
- Никакого UI. Один источник правды для: модели данных, пересчёта филамента в вес/стоимость,
  формул себестоимости (материал, труд, машина, оснастка, постобработка), риска брака и наценки.
- CLI, экспорт и хранилище профилей — тонкие оболочки, импортирующие этот модуль.

Поток данных:
  статистика слайсера + пресеты -> resolve_filaments() -> [FilamentUsage]
  -> compute_breakdown(JobParameters, ...) -> CostBreakdown -> отчёт / экспорт / профиль.

Все денежные значения — обычные float без округления; округление до центов — забота
слоя представления (render_report / invoice_export).
"""
from __future__ import annotations

import os
import re
import stat
import json
from dataclasses import dataclass, field, fields, asdict
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np


# ---------- Утилиты ----------
def nz(v, d=0.0) -> float:
    try:
        f = float(v)
        if np.isfinite(f):
            return f
    except Exception:
        pass
    return d


def _nonneg(v) -> float:
    return max(0.0, nz(v))


def _per(cost: float, lifespan: float) -> float:
    """Амортизация на единицу ресурса; нулевой/отрицательный ресурс -> 0 (без деления на ноль)."""
    life = _nonneg(lifespan)
    return _nonneg(cost) / life if life > 0 else 0.0


def _usd(v: float) -> str:
    return f"${nz(v):,.2f}"


def _line(label: str, value: str, width: int = 14) -> str:
    return f"  {label:<30}{value:>{width}}\n"


def deep_merge(dst: dict, src: dict) -> dict:
    """Глубокое слияние словарей src в dst (in-place). Возвращает dst."""
    for k, v in (src or {}).items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            deep_merge(dst[k], v)
        else:
            dst[k] = v
    return dst


def coerce_count(value, label: str = "count") -> int:
    """
    Приводит количество (деталей на столе / столов) к int и валидирует (>=1).
    Единая правда для CLI и конфигов: отсекает нули, отрицательные значения и неявные типы.
    """
    if isinstance(value, bool):
        raise ValueError(f"{label} must be int >= 1, got: {value!r}")
    try:
        q = int(value)
    except Exception as e:
        raise ValueError(f"{label} must be int >= 1, got: {value!r}") from e
    if q != nz(value, q) or q < 1:
        raise ValueError(f"{label} must be int >= 1, got: {value!r}")
    return q


def replacement_file_mode(path: str) -> int:
    """
    Права для файла, который подменяется через mkstemp + os.replace.
    mkstemp создаёт 0600; существующий файл сохраняет свои права, новый получает 0666 & ~umask, как при open().
    """
    try:
        return stat.S_IMODE(os.stat(path).st_mode)
    except OSError:
        pass
    mask = os.umask(0)
    os.umask(mask)
    return 0o666 & ~mask


# ---------- Время печати ----------
_TIME_PARTS = (
    (re.compile(r"(\d+)\s*d"), 24.0),
    (re.compile(r"(\d+)\s*h"), 1.0),
    (re.compile(r"(\d+)\s*m"), 1.0 / 60.0),
    (re.compile(r"(\d+)\s*s"), 1.0 / 3600.0),
)


def parse_time_to_hours(time_str: Optional[str]) -> float:
    """
    "1d 2h 3m 4s" -> часы. Любой компонент может отсутствовать (тогда он даёт 0);
    берётся первое вхождение каждого компонента.
    """
    if not time_str:
        return 0.0
    hours = 0.0
    for rx, factor in _TIME_PARTS:
        m = rx.search(time_str)
        if m:
            hours += float(m.group(1)) * factor
    return hours


def format_time(time_str: Optional[str]) -> str:
    return time_str if time_str else "N/A"


# ---------- Модель данных ----------
DEFAULT_COST_PER_KG = 20.0
DEFAULT_DENSITY_G_CM3 = 1.24
DEFAULT_DIAMETER_MM = 1.75
DEFAULT_COLOR = "#808080"
DEFAULT_FILAMENT_NAME = "Default Filament"


@dataclass
class FilamentUsage:
    """Расход одного экструдера. calculated_cost не хранится — всегда выводится из веса и цены."""
    extruder_id: int
    name: str
    color: str
    weight_g: float
    cost_per_kg: float

    @property
    def calculated_cost(self) -> float:
        return (self.weight_g / 1000.0) * self.cost_per_kg

    def to_dict(self) -> dict:
        d = asdict(self)
        d["calculated_cost"] = self.calculated_cost
        return d


@dataclass
class JobParameters:
    """Бизнес-параметры заказа. Значения по умолчанию — стартовый профиль мастерской."""
    # идентичность
    job_name: str = ""
    job_description: str = ""
    customer_name: str = ""
    customer_email: str = ""
    customer_phone: str = ""
    business_name: str = ""

    # тираж и риск
    parts_per_plate: int = 1
    num_plates: int = 1
    failure_rate: float = 5.0           # %, [0, 100)

    # труд
    labor_rate: float = 20.0            # $/ч
    prep_time: float = 15.0             # мин/стол (слайсинг, подготовка)
    setup_time: float = 10.0            # мин/стол (настройка машины)
    finishing_per_part: float = 5.0     # мин/деталь
    finishing_per_plate: float = 0.0    # мин/стол

    # машина
    printer_cost: float = 300.0         # $
    printer_lifespan: float = 15000.0   # ч
    maintenance_cost: float = 0.10      # $/ч
    power_watts: float = 130.0          # Вт
    electricity_cost: float = 0.15      # $/кВт·ч

    # оснастка
    bed_cost: float = 30.0              # $
    bed_lifespan: float = 5000.0        # ч
    nozzle_cost: float = 2.0            # $
    nozzle_lifespan_kg: float = 25.0    # кг

    # постобработка
    solvent_cost: float = 0.0           # $/л
    solving_time: float = 0.0           # ч
    tank_power: float = 0.0             # Вт
    finishing_materials: float = 0.0    # $/стол

    markup_percent: float = 50.0

    # extruder_id -> переопределённая цена $/кг
    filament_costs: Dict[int, float] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping) -> "JobParameters":
        """Собирает параметры из словаря (конфиг/JSON). Неизвестные ключи — ValueError."""
        if data is not None and not isinstance(data, Mapping):
            raise ValueError(f"job parameters must be an object, got: {type(data).__name__}")
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(k for k in (data or {}) if k not in known)
        if unknown:
            raise ValueError(f"unknown job parameter(s): {', '.join(unknown)}")
        params = cls()
        for k, v in (data or {}).items():
            if k == "filament_costs":
                if v is not None and not isinstance(v, Mapping):
                    raise ValueError(f"filament_costs must be an object {{extruder_id: cost}}, got: {v!r}")
                try:
                    params.filament_costs = {int(eid): float(cost) for eid, cost in (v or {}).items()}
                except (TypeError, ValueError):
                    raise ValueError(f"filament_costs must map int extruder ids to numbers, got: {v!r}") from None
            elif k in TEXT_FIELDS or k == "business_name":
                setattr(params, k, "" if v is None else str(v))
            elif k in INT_FIELDS:
                setattr(params, k, coerce_count(v, k))
            else:
                try:
                    setattr(params, k, float(v))
                except (TypeError, ValueError):
                    raise ValueError(f"job parameter {k!r} must be a number, got: {v!r}") from None
        return params

    def to_dict(self) -> dict:
        d = asdict(self)
        d["filament_costs"] = {str(k): v for k, v in sorted(self.filament_costs.items())}
        return d

    @property
    def total_parts(self) -> int:
        return int(self.parts_per_plate) * int(self.num_plates)


TEXT_FIELDS = ("customer_name", "customer_email", "customer_phone", "job_name", "job_description")
INT_FIELDS = ("parts_per_plate", "num_plates")
NUMERIC_FIELDS = tuple(
    f.name for f in fields(JobParameters)
    if f.name not in TEXT_FIELDS and f.name not in ("business_name", "filament_costs")
)


@dataclass(frozen=True)
class CostBreakdown:
    """Результат расчёта. Все поля производные; пересчёт — только через compute_breakdown()."""
    material_cost: float
    labor_cost: float
    machine_cost: float
    tooling_cost: float
    postprocess_cost: float
    subtotal: float
    failure_adjustment: float
    cost_per_part: float
    markup_amount: float
    final_price: float
    total_job_cost: float
    print_time_hours: float
    total_parts: int

    def to_dict(self) -> dict:
        return asdict(self)


# ---------- Пресеты ----------
class PresetProvider:
    """
    Типизированный доступ к пресетам филамента, индексированным по экструдеру.

    Значение ключа — список (или строка "a;b;c", как в ini-конфигах слайсера).
    Отсутствующий ключ/индекс и нечитаемое значение -> None ("не найдено"), никогда не исключение.
    """

    def __init__(self, config: Optional[Mapping] = None) -> None:
        self._config = dict(config or {})

    @classmethod
    def from_json(cls, path: str) -> "PresetProvider":
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError("presets: expected object {key: [values...]}")
        return cls(data)

    def _raw(self, key: str, idx: int):
        values = self._config.get(key)
        if values is None:
            return None
        if isinstance(values, str):
            values = values.split(";")
        if not isinstance(values, (list, tuple)):
            return None
        if idx < 0 or idx >= len(values):
            return None
        return values[idx]

    def get_str(self, key: str, idx: int) -> Optional[str]:
        v = self._raw(key, idx)
        if v is None or isinstance(v, (dict, list)):
            return None
        s = str(v).strip()
        return s or None

    def get_float(self, key: str, idx: int) -> Optional[float]:
        v = self._raw(key, idx)
        if v is None or isinstance(v, bool):
            return None
        try:
            f = float(str(v).strip())
        except ValueError:
            return None
        return f if np.isfinite(f) else None

    def filament_name(self, idx: int) -> str:
        return self.get_str("filament_presets", idx) or f"Filament {idx + 1}"


# ---------- Филамент: длина -> вес -> стоимость ----------
def resolve_filaments(
    filament_stats: Mapping,
    presets: Optional[PresetProvider] = None,
    total_weight_g: float = 0.0,
) -> List[FilamentUsage]:
    """
    filament_stats: {extruder_id: длина филамента, мм} из статистики слайсера.
    Вес = длина * π(d/2)² * плотность / 1000. Если экструдер один и слайсер сообщил общий вес,
    берём его (точнее геометрической оценки). Нет данных по экструдерам, но есть общий вес ->
    одна запись "Default Filament" по цене по умолчанию, чтобы материал не выпал из расчёта.
    """
    presets = presets or PresetProvider()
    total_weight_g = _nonneg(total_weight_g)

    usage: Dict[int, float] = {}
    for k, v in (filament_stats or {}).items():
        usage[int(k)] = _nonneg(v)
    ids = sorted(usage)

    out: List[FilamentUsage] = []
    if ids:
        length_mm = np.array([usage[i] for i in ids], dtype=np.float64)
        diameter = np.array([_preset_or(presets, "filament_diameter", i, DEFAULT_DIAMETER_MM) for i in ids])
        density = np.array([_preset_or(presets, "filament_density", i, DEFAULT_DENSITY_G_CM3) for i in ids])
        area_mm2 = np.pi * (diameter / 2.0) ** 2
        weight_g = length_mm * area_mm2 * density / 1000.0

        for pos, eid in enumerate(ids):
            out.append(FilamentUsage(
                extruder_id=eid,
                name=presets.filament_name(eid),
                color=presets.get_str("filament_colour", eid) or DEFAULT_COLOR,
                weight_g=float(weight_g[pos]),
                cost_per_kg=_preset_or(presets, "filament_cost", eid, DEFAULT_COST_PER_KG),
            ))

        if len(out) == 1 and total_weight_g > 0:
            out[0].weight_g = total_weight_g

    elif total_weight_g > 0:
        out.append(FilamentUsage(
            extruder_id=0,
            name=DEFAULT_FILAMENT_NAME,
            color=DEFAULT_COLOR,
            weight_g=total_weight_g,
            cost_per_kg=DEFAULT_COST_PER_KG,
        ))
    return out


def _preset_or(presets: PresetProvider, key: str, idx: int, default: float) -> float:
    v = presets.get_float(key, idx)
    return default if v is None else v


def apply_cost_overrides(filaments: List[FilamentUsage], overrides: Mapping) -> List[FilamentUsage]:
    """Ручная правка $/кг по extruder_id (in-place). calculated_cost пересчитывается сам."""
    for fil in filaments:
        if fil.extruder_id in (overrides or {}):
            fil.cost_per_kg = nz(overrides[fil.extruder_id], fil.cost_per_kg)
    return filaments


# ---------- Формулы себестоимости ----------
def compute_breakdown(
    params: JobParameters,
    filaments: List[FilamentUsage],
    print_time_hours: float,
) -> CostBreakdown:
    """
    Полный пересчёт с нуля (идемпотентен, без побочных эффектов).
    Отрицательные/нечисловые входы приводятся к 0, нулевой ресурс оснастки/принтера даёт 0.
    """
    t_h = _nonneg(print_time_hours)
    parts_per_plate = max(0, int(nz(params.parts_per_plate)))
    num_plates = max(0, int(nz(params.num_plates)))

    material = sum(_nonneg(f.calculated_cost) for f in filaments)
    total_filament_kg = sum(_nonneg(f.weight_g) for f in filaments) / 1000.0

    labor_min = (
        _nonneg(params.prep_time)
        + _nonneg(params.setup_time)
        + _nonneg(params.finishing_per_part) * parts_per_plate
        + _nonneg(params.finishing_per_plate)
    )
    labor = labor_min / 60.0 * _nonneg(params.labor_rate)

    electricity = _nonneg(params.electricity_cost)
    machine_per_hour = (
        _per(params.printer_cost, params.printer_lifespan)
        + _nonneg(params.maintenance_cost)
        + _nonneg(params.power_watts) / 1000.0 * electricity
    )
    machine = t_h * machine_per_hour

    tooling = (
        t_h * _per(params.bed_cost, params.bed_lifespan)
        + _per(params.nozzle_cost, params.nozzle_lifespan_kg) * total_filament_kg
    )

    postprocess = (
        _nonneg(params.tank_power) / 1000.0 * electricity * _nonneg(params.solving_time)
        + _nonneg(params.finishing_materials)
    )

    subtotal = material + labor + machine + tooling + postprocess

    # риск брака: закладываем ожидаемый брак в успешные отпечатки
    failure = _nonneg(params.failure_rate) / 100.0
    adjustment = subtotal / (1.0 - failure) - subtotal if failure < 1.0 else 0.0

    plate_cost = subtotal + adjustment
    cost_per_part = plate_cost / parts_per_plate if parts_per_plate > 0 else plate_cost

    markup = cost_per_part * (_nonneg(params.markup_percent) / 100.0)
    final_price = cost_per_part + markup
    total_parts = parts_per_plate * num_plates

    return CostBreakdown(
        material_cost=material,
        labor_cost=labor,
        machine_cost=machine,
        tooling_cost=tooling,
        postprocess_cost=postprocess,
        subtotal=subtotal,
        failure_adjustment=adjustment,
        cost_per_part=cost_per_part,
        markup_amount=markup,
        final_price=final_price,
        total_job_cost=final_price * total_parts,
        print_time_hours=t_h,
        total_parts=total_parts,
    )


# ---------- Config loading (единая правда для CLI/тестов) ----------
DEFAULTS_FILE_NAME = "invoice_defaults.json"


def get_default_config_dir() -> str:
    """Папка по умолчанию для invoice_defaults.json — рядом с invoice_core.py."""
    return os.path.dirname(os.path.abspath(__file__))


def get_default_config_path(config_dir: str | None = None) -> str:
    return os.path.join(config_dir or get_default_config_dir(), DEFAULTS_FILE_NAME)


def load_defaults_json(path: str, *, override: dict | None = None) -> dict:
    """
    invoice_defaults.json -> {"business_name": str, "job": {...}}.
    override: мердж поверх файла (например, --set в CLI).
    """
    if not os.path.exists(path):
        raise FileNotFoundError(path)

    with open(path, "r", encoding="utf-8") as f:
        cfg = json.load(f)

    if not isinstance(cfg, dict):
        raise ValueError(f"{os.path.basename(path)}: expected object")

    out = {"business_name": "", "job": {}}
    deep_merge(out, cfg)
    if override:
        deep_merge(out, override)
    if not isinstance(out.get("job"), dict):
        raise ValueError(f"{os.path.basename(path)}: 'job' must be an object")
    return out


def params_from_config(cfg: dict) -> JobParameters:
    params = JobParameters.from_dict(cfg.get("job") or {})
    params.business_name = str(cfg.get("business_name") or "")
    return params


# ---------- Форматирование отчёта ----------
def render_report(
    *,
    params: JobParameters,
    filaments: List[FilamentUsage],
    breakdown: CostBreakdown,
    print_time_str: Optional[str] = None,
    total_weight_g: float = 0.0,
    brief: bool = True,
) -> str:
    head = []
    if params.job_name:
        head.append(f"Job: {params.job_name}\n")
    if params.customer_name:
        head.append(f"Customer: {params.customer_name}\n")
    head.append(f"• Print time: {format_time(print_time_str)} ({breakdown.print_time_hours:.2f} h)\n")
    head.append(f"• Total weight: {nz(total_weight_g):.2f} g\n")
    head.append("-" * 46 + "\n")

    body = []
    if not brief:
        body.append(f"  {'Filament':<22}{'Color':<10}{'Weight (g)':>10}{'$/kg':>8}{'Cost':>10}\n")
        for fil in filaments:
            body.append(
                f"  {fil.name[:21]:<22}{fil.color[:9]:<10}{fil.weight_g:>10.2f}"
                f"{fil.cost_per_kg:>8.2f}{fil.calculated_cost:>10.2f}\n"
            )
        body.append(_line("Total Material Cost", _usd(breakdown.material_cost)))
        body.append("-" * 46 + "\n")

    body.append(_line("Material Cost", _usd(breakdown.material_cost)))
    body.append(_line("Labor Cost", _usd(breakdown.labor_cost)))
    body.append(_line("Machine Cost", _usd(breakdown.machine_cost)))
    body.append(_line("Tooling Cost", _usd(breakdown.tooling_cost)))
    body.append(_line("Post-Processing Cost", _usd(breakdown.postprocess_cost)))
    body.append("-" * 46 + "\n")
    body.append(_line("Subtotal (per plate)", _usd(breakdown.subtotal)))
    body.append(_line("Failure Rate Adjustment", "+" + _usd(breakdown.failure_adjustment)))
    body.append(_line("Cost Per Part", _usd(breakdown.cost_per_part)))
    body.append(_line("Markup Amount", "+" + _usd(breakdown.markup_amount)))
    body.append("-" * 46 + "\n")
    body.append(f"FINAL PRICE PER PART: {_usd(breakdown.final_price)}\n")
    body.append(f"TOTAL JOB COST: {_usd(breakdown.total_job_cost)} ({breakdown.total_parts} parts)\n")
    return "".join(head + body)


def summarize_stats(stats: Mapping) -> Tuple[Dict[int, float], float, str]:
    """Статистика слайсера (JSON) -> (filament_stats, total_weight_g, print_time_str)."""
    stats = stats or {}
    raw = stats.get("filament_stats") or {}
    if not isinstance(raw, dict):
        raise ValueError("stats: 'filament_stats' must be an object {extruder_id: length_mm}")
    filament_stats: Dict[int, float] = {}
    for k, v in raw.items():
        try:
            filament_stats[int(k)] = nz(v)
        except (TypeError, ValueError):
            raise ValueError(f"stats: invalid extruder id {k!r}") from None
    return (
        filament_stats,
        _nonneg(stats.get("total_weight")),
        str(stats.get("estimated_normal_print_time") or ""),
    )
