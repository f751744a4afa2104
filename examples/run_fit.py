"""Run a force-constant fit from a JSON input file.

Usage examples:
  python examples/run_fit.py --write-template examples/configs/fit_template.json
  python examples/run_fit.py --input examples/configs/fit_template.json
"""

from ifcfit.workflows.fit_run import main


if __name__ == "__main__":
    main()
