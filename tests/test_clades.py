import io
import unittest

from copyrighter.clades import (
    aggregate_clades,
    genome_summary,
    split_lineage,
    write_clade_summary,
    write_clade_trait_table,
)

PREFIX = "k__Bacteria;p__Firmicutes;c__Bacilli;o__Bacillales;f__Bacillaceae"


class TestClades(unittest.TestCase):

    def test_split_lineage(self):
        self.assertEqual(len(split_lineage(PREFIX + "; g__Bacillus; s__subtilis")), 7)
        self.assertIsNone(split_lineage(PREFIX + ";g__Bacillus;s__"))
        self.assertIsNone(split_lineage(PREFIX + ";g__Bacillus"))
        self.assertEqual(split_lineage("a;b;c;d;e;f", depth=6)[-1], "f")

    def test_average_of_averages(self):
        genomes = [(PREFIX + ";g__A;s__a", {"16S": 10})]
        genomes += [(PREFIX + ";g__B;s__b", {"16S": 0})] * 9
        levels = aggregate_clades(genomes)
        self.assertEqual(len(levels), 7)
        family = levels[4][PREFIX]
        self.assertEqual(family.average("16S"), 5)
        self.assertEqual(family.count, 2)
        self.assertEqual(levels[6][PREFIX + ";g__B;s__b"].count, 9)
        self.assertEqual(levels[0]["k__Bacteria"].average("16S"), 5)

    def test_incomplete_lineages_excluded(self):
        genomes = [
            (PREFIX + ";g__A;s__a", {"16S": 4}),
            (PREFIX + ";g__;s__", {"16S": 100}),
            (PREFIX, {"16S": 100}),
            (PREFIX + ";g__A;s__b", {"16S": None}),
        ]
        levels = aggregate_clades(genomes)
        self.assertEqual(list(levels[6]), [PREFIX + ";g__A;s__a"])
        self.assertEqual(levels[0]["k__Bacteria"].average("16S"), 4)

    def test_weighted_leaves(self):
        genomes = [(PREFIX + ";g__A;s__a", {"16S": 4}, 3), (PREFIX + ";g__A;s__a", {"16S": 8}, 1)]
        levels = aggregate_clades(genomes)
        self.assertEqual(levels[6][PREFIX + ";g__A;s__a"].average("16S"), 5)
        self.assertEqual(levels[5][PREFIX + ";g__A"].average("16S"), 5)

    def test_several_traits(self):
        genomes = [(PREFIX + ";g__A;s__a", {"16S": 4, "Genome Length": 4e6}),
                   (PREFIX + ";g__A;s__b", {"16S": 6, "Genome Length": 2e6})]
        genus = aggregate_clades(genomes)[5][PREFIX + ";g__A"]
        self.assertEqual(genus.averages(), {"16S": 5, "Genome Length": 3e6})

    def test_write_summary(self):
        levels = aggregate_clades([("k__A;p__B", {"16S": 2}), ("k__A;p__C", {"16S": 4})], depth=2)
        fh = io.StringIO()
        n = write_clade_summary(levels, ["16S"], fh)
        self.assertEqual(n, 3)
        self.assertEqual(fh.getvalue(),
                         "#Clade\tCount\t16S\n"
                         "k__A\t2\t3\n\n"
                         "k__A;p__B\t1\t2\nk__A;p__C\t1\t4\n\n")

        fh = io.StringIO()
        write_clade_trait_table(levels, "16S", fh)
        self.assertEqual(fh.getvalue().splitlines()[1], "k__A\t3\tk__A")

    def test_genome_summary_numeric_order(self):
        summary = genome_summary([("10", {"16S": 2}), ("9", {"16S": 3}), ("100", {"16S": None})])
        fh = io.StringIO()
        write_clade_summary([summary], ["16S"], fh)
        self.assertEqual(fh.getvalue().splitlines()[1:3], ["9\t1\t3", "10\t1\t2"])


if __name__ == "__main__":
    unittest.main()
