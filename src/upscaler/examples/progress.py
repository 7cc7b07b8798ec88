"""tqdm progress bar fed from UpscaleProgress events."""

from contextlib import contextmanager

from tqdm import tqdm


@contextmanager
def progress_bar(desc):
    """Yield a progress callback drawing one 0-100% bar."""
    with tqdm(total=100, desc=desc, unit="%", bar_format="{l_bar}{bar}| {n:.0f}% {postfix}") as bar:
        def update(event):
            bar.n = min(max(event.overall_percent, 0.0), 100.0)
            bar.set_postfix_str(event.message, refresh=False)
            bar.refresh()

        yield update
