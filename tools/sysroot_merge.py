#!/usr/bin/env python3
"""Sysroot merge helper.

Copies a base sysroot directory and overlays per-package contributions
on top.  Used to grow the target sysroot across the build graph (e.g.
base wasi libc -> + libtirpc headers/archive -> merged sysroot for
lmbench).

Overlays are applied in declaration order.  An overlay may replace a
file the base provides, but two overlays writing the same path is an
OverlayCollision: the merged tree must not depend on which package
happened to be merged last.  The merged tree is always rebuilt from
scratch in a sibling directory and swapped into place, so a failed merge
never leaves a half-written tree behind.
"""

import argparse
import hashlib
import os
import shutil
import sys

from build_errors import MergeConflict, OverlayCollision, SysrootTypeConflict


def overlay_dir(overlay_root, package):
    return os.path.join(overlay_root, package)


def _check_relative(rel):
    norm = os.path.normpath(rel)
    if os.path.isabs(rel) or norm == ".." or norm.startswith(".." + os.sep):
        raise ValueError(f"overlay path must stay inside the sysroot: {rel}")
    return norm


def compose_overlay(overlay_root, package, contributions):
    """Stage *contributions* into the package's own overlay subtree.

    contributions is an iterable of (relative_path, source_path).  A
    source directory is copied recursively under relative_path.  The
    package subtree is deleted first so a rebuilt package never leaves
    files from its previous contribution behind.
    """
    dest_root = overlay_dir(overlay_root, package)
    if os.path.lexists(dest_root):
        shutil.rmtree(dest_root)
    os.makedirs(dest_root)

    for rel, src in contributions:
        rel = _check_relative(rel)
        dst = os.path.join(dest_root, rel)
        if os.path.isdir(src) and not os.path.islink(src):
            shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)
        else:
            os.makedirs(os.path.dirname(dst), exist_ok=True)
            if os.path.lexists(dst):
                os.remove(dst)
            shutil.copy2(src, dst, follow_symlinks=False)
    return dest_root


def iter_tree(root):
    """Yield (relpath, abspath) for every file and symlink under *root*, sorted."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        entries = list(filenames)
        # Symlinked directories are not descended into; merge them as links.
        entries.extend(d for d in dirnames if os.path.islink(os.path.join(dirpath, d)))
        for name in sorted(entries):
            path = os.path.join(dirpath, name)
            yield os.path.relpath(path, root), path


def _parents(rel):
    """include/x/y.h -> include/x, include"""
    parent = os.path.dirname(rel)
    while parent:
        yield parent
        parent = os.path.dirname(parent)


def _check_placement(tree, rel, owner, owners, dir_owners):
    """Raise MergeConflict if *owner* cannot write *rel* into *tree*."""
    first = owners.get(rel)
    if first is not None and first != owner:
        raise OverlayCollision(rel, first, owner)
    first = dir_owners.get(rel)
    if first is not None and first != owner:
        raise OverlayCollision(rel, first, owner)
    for parent in _parents(rel):
        first = owners.get(parent)
        if first is not None and first != owner:
            raise OverlayCollision(parent, first, owner)
        path = os.path.join(tree, parent)
        if os.path.lexists(path) and not os.path.isdir(path):
            raise SysrootTypeConflict(parent, owner, "a file is in the way of a directory")
    dst = os.path.join(tree, rel)
    if os.path.isdir(dst) and not os.path.islink(dst):
        raise SysrootTypeConflict(rel, owner, "a directory is in the way of a file")


def _copy_entry(src, dst):
    os.makedirs(os.path.dirname(dst), exist_ok=True)
    if os.path.lexists(dst):
        os.remove(dst)
    if os.path.islink(src):
        os.symlink(os.readlink(src), dst)
    else:
        shutil.copy2(src, dst)


def merge_all(base, overlays, output):
    """Compose *output* from *base* plus (owner, directory) overlays, in order.

    Returns the mapping relpath -> owner for every file an overlay wrote.
    Raises OverlayCollision without touching *output* when two overlays
    claim the same path (or one needs a directory where the other wrote a
    file), and SysrootTypeConflict when an overlay and the base disagree
    on whether a path is a file or a directory.
    """
    output = os.path.abspath(output)
    tmp = output + ".tmp-merge"
    if os.path.lexists(tmp):
        shutil.rmtree(tmp)

    try:
        if base:
            if not os.path.isdir(base):
                raise FileNotFoundError(f"base directory not found: {base}")
            shutil.copytree(base, tmp, symlinks=True)
        else:
            os.makedirs(tmp)

        owners = {}
        dir_owners = {}
        for owner, directory in overlays:
            if not os.path.isdir(directory):
                raise FileNotFoundError(f"overlay directory not found: {directory}")
            for rel, src in iter_tree(directory):
                _check_placement(tmp, rel, owner, owners, dir_owners)
                _copy_entry(src, os.path.join(tmp, rel))
                owners[rel] = owner
                for parent in _parents(rel):
                    dir_owners.setdefault(parent, owner)
    except BaseException:
        shutil.rmtree(tmp, ignore_errors=True)
        raise

    if os.path.lexists(output):
        shutil.rmtree(output)
    os.rename(tmp, output)
    return owners


def tree_digest(directory):
    """SHA256 over relative paths, symlink targets and file contents."""
    h = hashlib.sha256()
    for rel, path in iter_tree(directory):
        h.update(rel.encode())
        h.update(b"\0")
        if os.path.islink(path):
            h.update(b"L" + os.readlink(path).encode())
        else:
            h.update(b"F")
            with open(path, "rb") as f:
                for chunk in iter(lambda: f.read(65536), b""):
                    h.update(chunk)
        h.update(b"\0")
    return h.hexdigest()


def _parse_overlay_arg(value):
    name, sep, directory = value.partition("=")
    if not sep:
        directory = value
        name = os.path.basename(os.path.normpath(value))
    return name, directory


def main():
    parser = argparse.ArgumentParser(description="Merge sysroot directories")
    parser.add_argument("--base", default=None,
                        help="Base sysroot directory to copy first (optional)")
    parser.add_argument("--overlay", action="append", dest="overlays", default=[],
                        help="[NAME=]DIR to overlay on top (repeatable, applied in order)")
    parser.add_argument("--output-dir", required=True,
                        help="Output sysroot directory")
    parser.add_argument("--print-digest", action="store_true",
                        help="Print the merged tree digest")
    args = parser.parse_args()

    if not args.base and not args.overlays:
        print("error: at least --base or --overlay must be specified", file=sys.stderr)
        sys.exit(1)

    overlays = [_parse_overlay_arg(o) for o in args.overlays]
    try:
        owners = merge_all(args.base, overlays, args.output_dir)
    except (MergeConflict, FileNotFoundError) as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"merged {len(owners)} overlay files into {args.output_dir}")
    if args.print_digest:
        print(tree_digest(args.output_dir))


if __name__ == "__main__":
    main()
