import io
import os
import tempfile
import unittest

from copyrighter.config import EstimationConfig
from copyrighter.errors import NoKnownValues
from copyrighter.estimate import (
    average_known,
    estimate_traits,
    inflate_clusters,
    read_observations,
    remove_outliers,
    write_trait_table,
)
from copyrighter.tree import TreeTemplate

TREE = "(((A:1,B:1):1,C:1):1,((D:1,E:1):1,(F:2,G:1):1):1);"
KNOWN = {"A": 1, "B": 3, "C": 5, "D": 10}


class TestEstimateTraits(unittest.TestCase):

    def setUp(self):
        self.template = TreeTemplate.from_newick(TREE)

    def test_all_unknown_leaves_are_estimated(self):
        estimates = estimate_traits(self.template, KNOWN, config=EstimationConfig(progress=False))
        self.assertEqual(list(estimates), ["E", "F", "G"])
        for value in estimates.values():
            self.assertGreaterEqual(value, 1)
            self.assertLessEqual(value, 10)

    def test_workers_give_same_results(self):
        single = estimate_traits(self.template, KNOWN, config=EstimationConfig(workers=1, progress=False))
        multi = estimate_traits(self.template, KNOWN, config=EstimationConfig(workers=4, progress=False))
        self.assertEqual(single, multi)

    def test_explicit_targets(self):
        estimates = estimate_traits(self.template, KNOWN, targets=["A", "G", "G"],
                                    config=EstimationConfig(progress=False))
        self.assertEqual(sorted(estimates), ["A", "G"])

    def test_no_known_values(self):
        with self.assertRaises(NoKnownValues):
            estimate_traits(self.template, {"Z": 2}, config=EstimationConfig(progress=False))

    def test_invalid_config(self):
        with self.assertRaises(ValueError):
            estimate_traits(self.template, KNOWN, config=EstimationConfig(workers=0))


class TestObservations(unittest.TestCase):

    def test_read_observations_keeps_repeats(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "obs.tsv")
            with open(path, "w") as fh:
                fh.write("#ID\tTrait\nA\t2\nA\t4\nB\t0\nC\tNA\nD\t6\n")
            observations = read_observations(path)
        self.assertEqual(observations, {"A": [2.0, 4.0], "D": [6.0]})
        self.assertEqual(average_known(observations), {"A": 3.0, "D": 6.0})

    def test_average_known_ignores_zero(self):
        self.assertEqual(average_known({"a": [2, 4], "b": [0], "c": [3]}), {"a": 3.0, "c": 3.0})

    def test_remove_outliers(self):
        observations = {"a": [7] * 9 + [30], "b": [4, 8, 8, 8], "c": [50]}
        with self.assertLogs("copyrighter.estimate", level="INFO") as logs:
            cleaned, events = remove_outliers(observations)
        self.assertEqual(cleaned["a"], [7.0] * 9)
        self.assertEqual(cleaned["b"], [4.0, 8.0, 8.0, 8.0])
        self.assertEqual(cleaned["c"], [50.0])
        self.assertEqual([(e.taxon, e.action, e.value) for e in events],
                         [("a", "dropped", 30.0), ("b", "flagged", 4.0)])
        self.assertTrue(any("dropped\ta\t30" in line for line in logs.output))


class TestClustersAndOutput(unittest.TestCase):

    def test_inflate_clusters(self):
        values, added = inflate_clusters({"r1": 3.0, "m2": 9.0},
                                         {"r1": ["r1", "m1", "m2"], "r9": ["r9", "m9"]})
        self.assertEqual(values, {"r1": 3.0, "m1": 3.0, "m2": 9.0})
        self.assertEqual(added, {"m1": "r1"})

    def test_write_trait_table(self):
        fh = io.StringIO()
        n = write_trait_table(fh, {"10": 2.5, "9": 3.0}, {"10": "estimated"})
        self.assertEqual(n, 2)
        self.assertEqual(fh.getvalue(), "#ID\tTrait\tProvenance\n9\t3\tobserved\n10\t2.5\testimated\n")


if __name__ == "__main__":
    unittest.main()
