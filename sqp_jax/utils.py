from typing import Any, Callable, Optional, TypeVar

import jax
import jax.numpy as jnp

T = TypeVar("T")


def args_closure(
    fn: Callable[[jax.Array, T], jax.Array], args: T
) -> Callable[[jax.Array], jax.Array]:
    def wrapped(x: jax.Array) -> jax.Array:
        return fn(x, args)

    return wrapped


def all_finite(tree: Any) -> bool:
    """True when every array leaf of ``tree`` is finite."""
    leaves = jax.tree_util.tree_leaves(tree)
    return all(bool(jnp.all(jnp.isfinite(jnp.asarray(leaf)))) for leaf in leaves)


def as_vector(
    value: Any, size: int, name: str, fill: Optional[float] = None
) -> jax.Array:
    """Convert ``value`` to a floating point vector of length ``size``.

    ``None`` is replaced by a vector filled with ``fill``; scalars are
    broadcast.
    """
    dtype = jnp.result_type(float)
    if value is None:
        if fill is None:
            raise ValueError(f"'{name}' is required")
        return jnp.full((size,), fill, dtype=dtype)
    arr = jnp.asarray(value, dtype=dtype)
    if arr.ndim == 0:
        return jnp.full((size,), arr, dtype=dtype)
    arr = arr.reshape(-1)
    if arr.shape[0] != size:
        raise ValueError(f"'{name}' must have length {size}, got {arr.shape[0]}")
    return arr
