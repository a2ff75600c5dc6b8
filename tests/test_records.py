import math
import struct
import unittest

import javaser
from javaser import (loads, dumps, ObjectStream, HandleTable, find_class_bag, class_name,
                     Null, Reference, ClassDesc, FieldDesc, JavaObject, ClassData, FieldValue, BlockData,
                     BASE_HANDLE, SC_SERIALIZABLE, UnexpectedEndOfStream, UnresolvedHandle, ClassChainTooDeep,
                     SerializationError, EncodingError, JavaFloat)
from streams import (HEADER, NULL, ENDBLOCKDATA, FIXTURES, INTEGER, HIERARCHY, BACKREF, CUSTOM, CLASS,
                     classdesc, field, obj, reference, blockdata, int32)


class TestObjectStream(unittest.TestCase):

    def test_read_and_peek(self):
        stream = ObjectStream(b'\x01\x02\x03')
        self.assertEqual(stream.peek(2), b'\x01\x02')
        self.assertEqual(stream.tell(), 0)
        self.assertEqual(stream.read(2), b'\x01\x02')
        self.assertEqual(stream.tell(), 2)
        self.assertEqual(stream.remaining(), 1)
        with self.assertRaises(UnexpectedEndOfStream) as cm:
            stream.read(2)
        self.assertEqual(cm.exception.offset, 2)
        self.assertEqual(stream.tell(), 2)  # a failed read consumes nothing

    def test_add_reference_starts_at_base_handle(self):
        stream = ObjectStream(b'')
        first, second = JavaObject(Null(), []), JavaObject(Null(), [])
        self.assertEqual(stream.add_reference(first),  0x7E0000)
        self.assertEqual(stream.add_reference(second), 0x7E0001)
        self.assertEqual(first.handle,  0x7E0000)
        self.assertEqual(second.handle, 0x7E0001)
        self.assertIs(stream.handles.resolve(0x7E0001), second)


class TestHandleTable(unittest.TestCase):

    def test_add_and_resolve(self):
        handles = HandleTable()
        self.assertEqual(handles.next_handle, BASE_HANDLE)
        desc = ClassDesc('Foo')
        self.assertEqual(handles.add(desc), BASE_HANDLE)
        self.assertIn(BASE_HANDLE, handles)
        self.assertNotIn(BASE_HANDLE + 1, handles)
        self.assertNotIn(0, handles)
        self.assertIs(handles.resolve(BASE_HANDLE, ClassDesc), desc)
        self.assertEqual(list(handles), [(BASE_HANDLE, desc)])
        self.assertEqual(len(handles), 1)

    def test_unassigned_handle(self):
        with self.assertRaises(UnresolvedHandle):
            HandleTable().resolve(BASE_HANDLE)

    def test_wrong_kind(self):
        handles = HandleTable()
        handles.add(JavaObject(Null(), []))
        with self.assertRaises(UnresolvedHandle):
            handles.resolve(BASE_HANDLE, (ClassDesc,))


class TestClassBag(unittest.TestCase):

    def test_null_pointer(self):
        self.assertEqual(find_class_bag(Null(), HandleTable()), [])

    def test_references_are_followed(self):
        handles = HandleTable()
        base    = ClassDesc('Base', super_class=Null())
        handles.add(base)
        child   = ClassDesc('Child', super_class=Reference(BASE_HANDLE))
        bag     = find_class_bag(child, handles)
        self.assertEqual([class_name(desc) for desc in bag], ['Child', 'Base'])

    def test_cycle_is_bounded(self):
        handles = HandleTable()
        desc    = ClassDesc('Loop', super_class=Reference(BASE_HANDLE))
        handles.add(desc)
        with self.assertRaises(ClassChainTooDeep):
            find_class_bag(desc, handles, max_depth=10)


class TestClassDesc(unittest.TestCase):

    def test_integer(self):
        ser = loads(INTEGER)
        self.assertEqual(len(ser.contents), 1)
        integer = ser.contents[0]
        desc    = integer.class_desc
        self.assertIsInstance(desc, ClassDesc)
        self.assertEqual(desc.name, 'java.lang.Integer')
        self.assertEqual(desc.serial_version_uid, 0x12E2A0A4F7818738)
        self.assertEqual(desc.flags, SC_SERIALIZABLE)
        self.assertEqual(desc.fields, [FieldDesc('I', 'value')])
        self.assertEqual(desc.annotations, [])
        self.assertEqual(desc.handle, 0x7E0000)

        number = desc.super_class
        self.assertEqual(number.name, 'java.lang.Number')
        self.assertEqual(number.serial_version_uid, struct.unpack('>q', bytes.fromhex('86ac951d0b94e08b'))[0])
        self.assertEqual(number.fields, [])
        self.assertEqual(number.super_class, Null())
        self.assertEqual(number.handle, 0x7E0001)

    def test_unknown_flag_bits_pass_through(self):
        for flags in (0xE2, 0xE0, 0x0A):
            data = HEADER + obj(classdesc('Odd', 1, flags))
            ser  = loads(data)
            self.assertEqual(ser.contents[0].class_desc.flags, flags)
            self.assertEqual(dumps(ser), data)

    def test_field_count_is_recomputed(self):
        ser  = loads(CLASS)
        desc = ser.contents[0].class_desc
        desc.fields.append(FieldDesc('J', 'extra'))
        reread = loads(dumps(ser)).contents[0].class_desc
        self.assertEqual(reread.fields, [FieldDesc('J', 'extra')])

    def test_class_annotations(self):
        data = HEADER + b'\x76' + classdesc('Annotated', 5, 0x02, annotations=blockdata(b'hi') + NULL)
        desc = loads(data).contents[0].class_desc
        self.assertEqual(desc.annotations, [BlockData(b'hi'), Null()])
        self.assertEqual(dumps(loads(data)), data)


class TestObject(unittest.TestCase):

    def test_integer_field_data(self):
        integer = loads(INTEGER).contents[0]
        self.assertEqual(integer.handle, 0x7E0002)
        self.assertEqual(integer.class_data, [
            ClassData('java.lang.Number',  []),
            ClassData('java.lang.Integer', [FieldValue('value', 'I', 5)]),
        ])

    def test_field_data_is_ancestor_first(self):
        ser   = loads(HIERARCHY)
        child = ser.contents[0]
        bag   = ser.class_bag(child)
        self.assertEqual([desc.name for desc in bag], ['Child', 'Middle', 'Base'])
        self.assertEqual([data.class_name for data in child.class_data], ['Base', 'Middle', 'Child'])
        self.assertEqual(len(child.class_data), len(bag))
        self.assertEqual(child.class_data[0].values, [FieldValue('b', 'S', 7)])
        self.assertEqual(child.class_data[1].values, [])  # a class without fields still has a block
        self.assertEqual(child.class_data[2].values, [FieldValue('c', 'I', 9)])

    def test_null_class_short_circuits(self):
        stream = ObjectStream(HEADER + b'\x73\x70' + b'\x70')
        stream.read(4)
        null_object = stream.read_content()
        self.assertEqual(stream.tell(), 6)
        self.assertEqual(null_object.class_desc, Null())
        self.assertEqual(null_object.class_data, [])
        self.assertEqual(null_object.handle, BASE_HANDLE)

    def test_back_referenced_class(self):
        ser = loads(BACKREF)
        first, second = ser.contents
        self.assertIsInstance(first.class_desc, ClassDesc)
        self.assertEqual(second.class_desc, Reference(0x7E0000))
        self.assertEqual(ser.class_bag(first), ser.class_bag(second))
        self.assertIs(ser.resolve(second.class_desc), first.class_desc)
        self.assertEqual(second.class_data, [ClassData('Foo', [FieldValue('x', 'I', 2)])])
        self.assertEqual(second.handle, 0x7E0002)
        self.assertEqual(sum(isinstance(record, ClassDesc) for handle, record in ser.handles), 1)

    def test_write_method_annotations(self):
        custom = loads(CUSTOM).contents[0]
        self.assertEqual(custom.class_data, [
            ClassData('Custom', [FieldValue('n', 'I', 1)], [BlockData(b'\x00\x00\x00\x2a')]),
        ])

    def test_externalizable_block_data(self):
        data = HEADER + obj(classdesc('Ext', 9, 0x0C), blockdata(b'\x01') + ENDBLOCKDATA)
        ext  = loads(data).contents[0]
        self.assertEqual(ext.class_data, [ClassData('Ext', [], [BlockData(b'\x01')])])
        self.assertEqual(dumps(loads(data)), data)

    def test_boolean_bytes_are_kept(self):
        data = HEADER + obj(classdesc('Flags', 1, 0x02, [field('Z', 'a'), field('Z', 'b'), field('Z', 'c')]),
                            b'\x00\x01\x02')
        values = [value.value for value in loads(data).contents[0].class_data[0].values]
        self.assertIs(values[0], False)
        self.assertIs(values[1], True)
        self.assertEqual(values[2], 2)
        self.assertEqual(dumps(loads(data)), data)

    def test_float_bits_are_kept(self):
        signalling_nan = b'\x7f\x80\x00\x01'
        data = HEADER + obj(classdesc('Floats', 1, 0x02, [field('F', 'f'), field('F', 'g')]),
                            signalling_nan + b'\x3f\xc0\x00\x00')
        f, g = [value.value for value in loads(data).contents[0].class_data[0].values]
        self.assertIsInstance(f, JavaFloat)
        self.assertTrue(math.isnan(f))
        self.assertEqual(f.raw, signalling_nan)
        self.assertEqual(g, 1.5)
        self.assertEqual(dumps(loads(data)), data)

    def test_null_field_type_string(self):
        data = HEADER + obj(classdesc('Untyped', 1, 0x02, [field('L', 'x', NULL)]), NULL)
        ser  = loads(data)
        self.assertEqual(ser.contents[0].class_desc.fields, [FieldDesc('L', 'x', Null())])
        self.assertEqual(dumps(ser), data)

    def test_externalizable_without_block_data(self):
        with self.assertRaises(SerializationError):
            loads(HEADER + obj(classdesc('OldExt', 9, 0x04), b'\x00\x01'))


class TestProperties(unittest.TestCase):

    def test_round_trip(self):
        for name, data in FIXTURES.items():
            with self.subTest(name):
                self.assertEqual(dumps(loads(data)), data)
                self.assertEqual(loads(data).to_bytes(), data)

    def test_handles_are_sequential(self):
        for name, data in FIXTURES.items():
            with self.subTest(name):
                handles = list(loads(data).handles)
                self.assertEqual([handle for handle, record in handles],
                                 list(range(BASE_HANDLE, BASE_HANDLE + len(handles))))
                for handle, record in handles:
                    self.assertEqual(record.handle, handle)

    def test_block_count_matches_class_bag(self):
        for name, data in FIXTURES.items():
            ser = loads(data)
            for handle, record in ser.handles:
                if isinstance(record, JavaObject):
                    with self.subTest(name, handle=handle):
                        self.assertEqual(len(record.class_data), len(ser.class_bag(record)))


class TestWriter(unittest.TestCase):

    def point(self, x=1, y=2, class_desc=None):
        if class_desc is None:
            class_desc = ClassDesc('Point', 1, SC_SERIALIZABLE, [FieldDesc('I', 'x'), FieldDesc('I', 'y')], [], Null())
        return JavaObject(class_desc, [ClassData('Point', [FieldValue('x', 'I', x), FieldValue('y', 'I', y)])])

    def test_hand_built_graph(self):
        expected = (HEADER +
                    obj(classdesc('Point', 1, 0x02, [field('I', 'x'), field('I', 'y')]), int32(1) + int32(2)) +
                    obj(reference(0x7E0000), int32(3) + int32(4)))
        self.assertEqual(dumps([self.point(), self.point(3, 4, Reference(0x7E0000))]), expected)

    def test_hand_built_handles(self):
        ser = javaser.Serialization([self.point()])
        self.assertEqual(len(ser.handles), 2)
        self.assertEqual(ser.class_bag(ser.contents[0])[0].name, 'Point')

    def test_block_count_mismatch(self):
        point = self.point()
        point.class_data.append(ClassData('Extra', []))
        with self.assertRaises(EncodingError):
            dumps(point)

    def test_null_class_with_data(self):
        with self.assertRaises(EncodingError):
            dumps(JavaObject(Null(), [ClassData('Nothing', [])]))

    def test_dangling_reference(self):
        with self.assertRaises(EncodingError):
            dumps(Reference(0x7E0009))
        with self.assertRaises(EncodingError):
            dumps(self.point(class_desc=Reference(0x7E0000)))

    def test_handle_mismatch(self):
        desc = ClassDesc('Point', 1, SC_SERIALIZABLE, [FieldDesc('I', 'x'), FieldDesc('I', 'y')], [], Null(), 0x7E0005)
        with self.assertRaises(EncodingError):
            dumps(self.point(class_desc=desc))

    def test_value_out_of_range(self):
        with self.assertRaises(EncodingError):
            dumps(self.point(x=2**40))
        flag = ClassDesc('Flag', 1, SC_SERIALIZABLE, [FieldDesc('Z', 'b')], [], Null())
        with self.assertRaises(EncodingError):
            dumps(JavaObject(flag, [ClassData('Flag', [FieldValue('b', 'Z', 256)])]))

    def test_plain_primitives(self):
        desc = ClassDesc('Prims', 1, SC_SERIALIZABLE, [FieldDesc('Z', 'b'), FieldDesc('F', 'f'), FieldDesc('C', 'c')],
                         [], Null())
        prims = JavaObject(desc, [ClassData('Prims', [FieldValue('b', 'Z', True), FieldValue('f', 'F', 1.5),
                                                      FieldValue('c', 'C', 'h')])])
        self.assertTrue(dumps(prims).endswith(b'\x01' + b'\x3f\xc0\x00\x00' + b'\x00h'))

    def test_not_a_record(self):
        with self.assertRaises(EncodingError):
            dumps(object())


if __name__ == '__main__':
    unittest.main()
