from .fit_run import main, run_fit, write_input_template

__all__ = ["run_fit", "write_input_template", "main"]
