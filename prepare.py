#
# prepare.py
#   Load the training data described by a config and snapshot it, so that
#   training can `DataSet.resume` instead of decoding every image again.
#
# Author : Donny
#

import argparse
import logging

from jdacascade import Config, DataSet, JoinCascador
from jdacascade.io_utils import setup_logging


def parse_args():
    parser = argparse.ArgumentParser(description="Prepare joint cascade training data.")
    parser.add_argument("config", help="YAML training config")
    parser.add_argument("--output", default=None, help="Snapshot path, overrides snapshot_path")
    parser.add_argument("--dump", default=None, help="Also dump positive patches into this directory")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args()


def main():
    args = parse_args()
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    config = Config.load(args.config)
    pos = DataSet(True, config)
    neg = DataSet(False, config)
    DataSet.loadDataSet(pos, neg, config)

    # an empty cascade accepts every patch
    neg.moreNegSamples(pos.size, config.nps, JoinCascador(pos.mean_shape))
    DataSet.updateJointWeights(pos, neg)

    if args.dump:
        pos.dump(args.dump)
    DataSet.snapshot(pos, neg, args.output)


if __name__ == "__main__":
    main()
