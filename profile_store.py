# -*- coding: utf-8 -*-
"""
profile_store.py — сохранение именованных профилей заказа (JobParameters) в плоское хранилище ключ->строка

Формат ключей совместим с конфигом слайсера (app config):
  invoice_job_<профиль>_<поле>          — значение поля профиля (текст; числа через repr/str)
  invoice_job_<профиль>_filament_costs  — "0=25.0;2=18.5;" (переопределения $/кг по экструдерам)
  invoice_profiles                      — реестр имён "a;b;" (хвостовой ';' допустим)
  invoice_business_name / invoice_last_profile — глобальные настройки мастерской

Реестр — единственный источник перечислимости: delete убирает имя из реестра, а ключи данных
остаются "сиротами" и игнорируются. Блокировок нет: один процесс, один писатель.
"""
from __future__ import annotations

import os
import json
import tempfile
from typing import Dict, List, Mapping, Optional

import invoice_core as core
from invoice_core import JobParameters


class ProfileStoreError(Exception):
    """Ошибка хранилища профилей (файл не читается / не пишется / битый JSON)."""


class JsonKeyValueStore:
    """Непрозрачное хранилище строка->строка в JSON-файле: get / set / save (flush)."""

    def __init__(self, path: str) -> None:
        self.path = os.path.abspath(os.path.expanduser(path))
        self._data: Dict[str, str] = {}
        if os.path.exists(self.path):
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except json.JSONDecodeError as e:
                raise ProfileStoreError(
                    f"{os.path.basename(self.path)}: ошибка JSON ({e.msg}, строка {e.lineno}, колонка {e.colno})"
                ) from None
            except OSError as e:
                raise ProfileStoreError(f"Не удалось прочитать {self.path}: {e}") from None
            if not isinstance(data, dict):
                raise ProfileStoreError(f"{os.path.basename(self.path)}: expected object {{key: value}}")
            self._data = {str(k): "" if v is None else str(v) for k, v in data.items()}

    def get(self, key: str) -> str:
        return self._data.get(key, "")

    def set(self, key: str, value: str) -> None:
        self._data[key] = str(value)

    def save(self) -> None:
        # пишем во временный файл рядом и атомарно подменяем — без полузаписанного файла
        folder = os.path.dirname(self.path) or "."
        try:
            fd, tmp = tempfile.mkstemp(prefix=".store-", suffix=".tmp", dir=folder)
        except OSError as e:
            raise ProfileStoreError(f"Не удалось сохранить {self.path}: {e}") from None
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, ensure_ascii=False, indent=2, sort_keys=True)
            os.chmod(tmp, core.replacement_file_mode(self.path))
            os.replace(tmp, self.path)
        except OSError as e:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise ProfileStoreError(f"Не удалось сохранить {self.path}: {e}") from None


# ---------- (де)сериализация полей ----------
def _format_number(name: str, value) -> str:
    if name in core.INT_FIELDS:
        return str(int(value))
    return repr(float(value))


def _parse_number(name: str, text: str, default):
    """Пустое или нечитаемое значение -> значение поля по умолчанию (без исключений)."""
    f = core.nz((text or "").strip(), None)
    if f is None:
        return default
    if name in core.INT_FIELDS:
        return int(f)
    return f


def _format_costs(costs: Mapping) -> str:
    return "".join(f"{int(eid)}={float(cost)!r};" for eid, cost in sorted((costs or {}).items()))


def _parse_costs(text: str) -> Dict[int, float]:
    out: Dict[int, float] = {}
    for item in (text or "").split(";"):
        if "=" not in item:
            continue
        k, v = item.split("=", 1)
        try:
            eid = int(k.strip())
        except ValueError:
            continue
        cost = core.nz(v.strip(), None)
        if cost is not None:
            out[eid] = cost
    return out


class JobProfileStore:
    REGISTRY_KEY = "invoice_profiles"
    KEY_PREFIX = "invoice_job_"
    BUSINESS_NAME_KEY = "invoice_business_name"
    LAST_PROFILE_KEY = "invoice_last_profile"
    DELIMITER = ";"

    def __init__(self, store) -> None:
        self.store = store

    # --- реестр имён ---
    def list(self) -> List[str]:
        names: List[str] = []
        for item in self.store.get(self.REGISTRY_KEY).split(self.DELIMITER):
            if item and item not in names:
                names.append(item)
        return names

    def _write_registry(self, names: List[str]) -> None:
        self.store.set(self.REGISTRY_KEY, "".join(n + self.DELIMITER for n in names))

    def exists(self, name: str) -> bool:
        return name in self.list()

    def _prefix(self, name: str) -> str:
        return f"{self.KEY_PREFIX}{name}_"

    @classmethod
    def validate_name(cls, name: str) -> str:
        if not name or not name.strip():
            raise ValueError("profile name must be non-empty")
        if cls.DELIMITER in name:
            raise ValueError(f"profile name must not contain {cls.DELIMITER!r}: {name!r}")
        return name

    # --- профили ---
    def save(self, name: str, params: JobParameters, filament_overrides: Optional[Mapping] = None) -> None:
        """Сохраняет снимок параметров под именем. Повторное сохранение того же имени не дублирует реестр."""
        self.validate_name(name)
        prefix = self._prefix(name)
        for key in core.TEXT_FIELDS:
            self.store.set(prefix + key, getattr(params, key) or "")
        for key in core.NUMERIC_FIELDS:
            self.store.set(prefix + key, _format_number(key, getattr(params, key)))
        costs = params.filament_costs if filament_overrides is None else filament_overrides
        self.store.set(prefix + "filament_costs", _format_costs(costs))

        names = self.list()
        if name not in names:
            names.append(name)
        self._write_registry(names)
        self.store.set(self.LAST_PROFILE_KEY, name)
        if params.business_name:
            self.store.set(self.BUSINESS_NAME_KEY, params.business_name)
        self.store.save()

    def load(self, name: str) -> Optional[JobParameters]:
        """Профиль по имени; неизвестное имя -> None (текущие параметры вызывающего не трогаем)."""
        if not name or not self.exists(name):
            return None
        prefix = self._prefix(name)
        defaults = JobParameters()
        params = JobParameters()
        for key in core.TEXT_FIELDS:
            setattr(params, key, self.store.get(prefix + key))
        for key in core.NUMERIC_FIELDS:
            setattr(params, key, _parse_number(key, self.store.get(prefix + key), getattr(defaults, key)))
        params.filament_costs = _parse_costs(self.store.get(prefix + "filament_costs"))
        params.business_name = self.business_name
        return params

    def delete(self, name: str) -> bool:
        """Убирает имя из реестра. Ключи данных не вычищаются — без реестра они недостижимы."""
        names = self.list()
        if name not in names:
            return False
        self._write_registry([n for n in names if n != name])
        if self.store.get(self.LAST_PROFILE_KEY) == name:
            self.store.set(self.LAST_PROFILE_KEY, "")
        self.store.save()
        return True

    # --- глобальные настройки ---
    @property
    def business_name(self) -> str:
        return self.store.get(self.BUSINESS_NAME_KEY)

    @property
    def last_profile(self) -> str:
        name = self.store.get(self.LAST_PROFILE_KEY)
        return name if name and self.exists(name) else ""

    def remember_last(self, name: str) -> None:
        """Запоминает последний открытый профиль (как при сохранении), чтобы --last-profile вернул именно его."""
        if self.store.get(self.LAST_PROFILE_KEY) == name:
            return
        self.store.set(self.LAST_PROFILE_KEY, name)
        self.store.save()

    def save_global_settings(self, business_name: str, last_profile: str = "") -> None:
        self.store.set(self.BUSINESS_NAME_KEY, business_name or "")
        self.store.set(self.LAST_PROFILE_KEY, last_profile or "")
        self.store.save()
