import logging
import os

import matplotlib.pyplot as plt
import pandas as pd

from src.utils import CONFIG, setup_logging, save_results, save_plot


def test_setup_logging_writes_log_file(tmp_path):
    setup_logging(str(tmp_path))
    logging.getLogger('test').info("hello")
    for handler in logging.getLogger().handlers:
        handler.flush()
    log_text = (tmp_path / CONFIG['log_file']).read_text()
    assert "test - INFO - hello" in log_text


def test_save_results_and_plot(tmp_path):
    path = save_results(pd.DataFrame({'a': [1, 2]}), str(tmp_path / "tables"), 'a.csv', index=False)
    assert pd.read_csv(path)['a'].tolist() == [1, 2]

    fig, ax = plt.subplots()
    ax.plot([0, 1], [0, 1])
    plot_path = save_plot(fig, 'line', str(tmp_path / "plots"))
    assert os.path.basename(plot_path) == 'line.png'
    assert os.path.exists(plot_path)
    assert not plt.fignum_exists(fig.number)
