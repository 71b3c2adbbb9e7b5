from importlib import import_module

__all__ = [
    "GeoIntelEngine",
    "build_sql_engine",
]

_LAZY_EXPORTS = {
    "GeoIntelEngine": ("services.geo_intel.engine", "GeoIntelEngine"),
    "build_sql_engine": ("services.geo_intel.engine", "build_sql_engine"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
