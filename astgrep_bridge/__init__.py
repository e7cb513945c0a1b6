"""ast-grep bridge: a sandboxed request pipeline around the ast-grep CLI."""

__version__ = "0.3.0"
